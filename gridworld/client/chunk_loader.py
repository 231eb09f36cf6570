"""
Chunk loader: request a chunk, wait for the server to finish generating it,
download the asset and hand it to the renderer.

- Already generated: loads immediately.
- Generating (or just started): polls ``/api/chunk`` until ready.
- Billing halt on the server: raises ``BillingHaltError`` so the caller can
  stop requesting anything until the halt is cleared.

Blocking; the chunk manager runs loads on an executor.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests

from gridworld.client.api_client import ChunkApiClient
from gridworld.client.renderer import Position, Renderer
from gridworld.client.settings import DEFAULT_SETTINGS, ClientSettings

logger = logging.getLogger("gridworld.client.loader")

ZONE_ACTIVE = "active"
ZONE_CACHED = "cached"
ZONE_PURGED = "purged"


# ── Exceptions ───────────────────────────────────────────────
class ChunkLoaderError(Exception):
    """Base class for chunk load failures."""


class BillingHaltError(ChunkLoaderError):
    """The server is out of provider credits; nothing will generate until cleared."""


class GenerationFailedError(ChunkLoaderError):
    """The server reported the generation as failed."""


class ChunkTimeoutError(ChunkLoaderError):
    """Polling gave up before the chunk completed."""


class ChunkLoadError(ChunkLoaderError):
    """Transport or HTTP failure while fetching a chunk."""


@dataclass
class ClientChunkState:
    x: int
    y: int
    handle: Any
    zone: str = ZONE_ACTIVE
    fade: float = 0.0
    visible: bool = False
    loading: bool = False

    @property
    def key(self):
        return (self.x, self.y)


class ChunkLoader:
    def __init__(
        self,
        api: ChunkApiClient,
        renderer: Renderer,
        *,
        settings: Optional[ClientSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api = api
        self.renderer = renderer
        self.settings = settings or DEFAULT_SETTINGS
        self._sleep = sleep

    def world_position(self, x: int, y: int) -> Position:
        size = self.settings.tile_size
        return (x * size, 0.0, y * size)

    def load_chunk(self, x: int, y: int, prompt: str) -> ClientChunkState:
        try:
            resp = self.api.get_chunk(x, y, prompt)
        except requests.RequestException as e:
            raise ChunkLoadError(f"Network error fetching chunk ({x},{y})") from e

        if resp.status == "billing_error":
            raise BillingHaltError(resp.error or "API billing error - out of credits")
        if not resp.ok:
            raise ChunkLoadError(f"Server returned {resp.status_code} for chunk ({x},{y})")

        if resp.status == "completed" and resp.data.get("spzUrl"):
            asset_url = resp.data["spzUrl"]
        else:
            asset_url = self._poll_until_ready(x, y, prompt)

        try:
            blob = self.api.download_asset(asset_url)
        except requests.RequestException as e:
            raise ChunkLoadError(f"Failed to download asset for chunk ({x},{y}): {e}") from e

        handle = self.renderer.load(blob, self.world_position(x, y))
        logger.info("[Load] Chunk (%s,%s) ready", x, y)
        return ClientChunkState(x=x, y=y, handle=handle)

    def _poll_until_ready(self, x: int, y: int, prompt: str) -> str:
        attempts = self.settings.max_poll_attempts
        for attempt in range(1, attempts + 1):
            self._sleep(self.settings.poll_interval)

            try:
                resp = self.api.get_chunk(x, y, prompt)
            except requests.RequestException as e:
                logger.debug("[Load] Poll %s/%s for (%s,%s) failed: %s", attempt, attempts, x, y, e)
                continue

            if resp.status == "billing_error":
                raise BillingHaltError(resp.error or "API billing error")
            if not resp.ok:
                continue
            if resp.status == "completed" and resp.data.get("spzUrl"):
                return resp.data["spzUrl"]
            if resp.status == "error":
                raise GenerationFailedError(f"Chunk ({x},{y}) generation failed on server")

        raise ChunkTimeoutError(f"Chunk ({x},{y}) timed out waiting for generation")

"""
Spatial streaming cache for chunks around a moving viewer.

Each frame ``update()``:
  1. applies loads that finished since the last frame,
  2. requests the chunk under the viewer first,
  3. once anything is resident, requests the active ring and the
     predictive fetcher's look-ahead,
  4. runs the 3-zone hysteresis per resident chunk:

       d <= active_radius                  fade toward 1 (visible)
       active_radius < d <= cached_radius  fade toward 0 (kept in memory)
       d > cached_radius                   purged, renderable released

Loads run on an executor; their results are only ever applied from
``update()``, so every state mutation happens on the caller's thread.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple

import requests

from gridworld.client.api_client import ChunkApiClient
from gridworld.client.chunk_loader import (
    ZONE_ACTIVE,
    ZONE_CACHED,
    ZONE_PURGED,
    BillingHaltError,
    ChunkLoader,
    ClientChunkState,
)
from gridworld.client.predictive_fetcher import PredictiveFetcher, ViewerSnapshot
from gridworld.client.settings import DEFAULT_SETTINGS, ClientSettings

logger = logging.getLogger("gridworld.client.manager")

Coord = Tuple[int, int]


# ── Pure helpers ─────────────────────────────────────────────
def chebyshev(ax: int, ay: int, bx: int, by: int) -> int:
    """Chessboard distance between two chunk coords."""
    return max(abs(ax - bx), abs(ay - by))


def target_fade(distance: int, active_radius: int, cached_radius: int) -> Optional[float]:
    """1.0 inside the active zone, 0.0 in the cached band, None when the chunk should be purged."""
    if distance <= active_radius:
        return 1.0
    if distance <= cached_radius:
        return 0.0
    return None


def step_fade(current: float, target: float, max_step: float) -> float:
    if current < target:
        return min(target, current + max_step)
    return max(target, current - max_step)


class ChunkManager:
    def __init__(
        self,
        loader: ChunkLoader,
        prompt: str,
        *,
        settings: Optional[ClientSettings] = None,
        fetcher: Optional[PredictiveFetcher] = None,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.monotonic,
        on_billing_halt: Optional[Callable[[str], None]] = None,
        api: Optional[ChunkApiClient] = None,
    ):
        self.loader = loader
        self.prompt = prompt
        self.settings = settings or DEFAULT_SETTINGS
        self.fetcher = fetcher or PredictiveFetcher(self.settings)
        self.renderer = loader.renderer
        self.api = api
        self.on_billing_halt = on_billing_halt
        self._clock = clock
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.settings.max_pending_loads, thread_name_prefix="chunk_load"
        )

        self.chunks: Dict[Coord, ClientChunkState] = {}
        self._pending: Dict[Coord, Future] = {}
        # Loads started before purge_all()/change_prompt(); released on arrival
        self._abandoned: List[Future] = []
        self._failed: Dict[Coord, float] = {}
        self.billing_halted = False
        self.billing_message: Optional[str] = None

    # ── frame update ──────────────────────────────────────────
    def update(self, viewer: ViewerSnapshot, dt: float) -> None:
        self._collect_finished()

        cx, cy = viewer.chunk_x, viewer.chunk_y
        self.request_chunk(cx, cy)

        if self.chunks:
            radius = self.settings.active_radius
            for dx in range(-radius, radius + 1):
                for dy in range(-radius, radius + 1):
                    if dx == 0 and dy == 0:
                        continue
                    self.request_chunk(cx + dx, cy + dy)
            for x, y in self.fetcher.predicted_chunks(viewer):
                self.request_chunk(x, y)

        self._apply_zones(cx, cy, dt)

    def _apply_zones(self, cx: int, cy: int, dt: float) -> None:
        max_step = self.settings.fade_speed * dt
        for key, chunk in list(self.chunks.items()):
            if chunk.handle is None or chunk.loading:
                continue

            d = chebyshev(chunk.x, chunk.y, cx, cy)
            target = target_fade(d, self.settings.active_radius, self.settings.cached_radius)
            if target is None:
                self._purge(key, chunk)
                continue

            chunk.fade = step_fade(chunk.fade, target, max_step)
            chunk.visible = chunk.fade > self.settings.fade_epsilon
            if chunk.fade >= 1.0:
                chunk.zone = ZONE_ACTIVE
            elif chunk.fade <= 0.0:
                chunk.zone = ZONE_CACHED
            self.renderer.apply_fade(chunk.handle, chunk.fade, chunk.visible)

    def _collect_finished(self) -> None:
        for key, future in list(self._pending.items()):
            if not future.done():
                continue
            del self._pending[key]
            try:
                state = future.result()
            except BillingHaltError as e:
                self._halt(str(e))
            except Exception as e:
                logger.error("[Load] Failed to load chunk (%s,%s): %s", key[0], key[1], e)
                self._failed[key] = self._clock()
            else:
                self.chunks[key] = state

        for future in list(self._abandoned):
            if not future.done():
                continue
            self._abandoned.remove(future)
            if future.cancelled() or future.exception() is not None:
                continue
            self.renderer.release(future.result().handle)

    # ── requests ──────────────────────────────────────────────
    def request_chunk(self, x: int, y: int) -> bool:
        """Start loading (x, y) unless gated. Returns True if a load was submitted."""
        if self.billing_halted:
            return False

        key = (x, y)
        if key in self.chunks or key in self._pending:
            return False

        failed_at = self._failed.get(key)
        if failed_at is not None and self._clock() - failed_at < self.settings.retry_cooldown:
            return False

        if len(self._pending) >= self.settings.max_pending_loads:
            return False

        self._failed.pop(key, None)
        self._pending[key] = self._executor.submit(self.loader.load_chunk, x, y, self.prompt)
        return True

    def _halt(self, message: str) -> None:
        self.billing_halted = True
        self.billing_message = message
        logger.error("[billing] %s", message)
        if self.on_billing_halt:
            self.on_billing_halt(message)

    # ── purging ───────────────────────────────────────────────
    def _purge(self, key: Coord, chunk: ClientChunkState) -> None:
        if chunk.handle is not None:
            self.renderer.release(chunk.handle)
            chunk.handle = None
        chunk.zone = ZONE_PURGED
        chunk.visible = False
        self.chunks.pop(key, None)

    def reload_active_chunks(self) -> None:
        """Drop resident chunks so they load again (e.g. after the render context was lost)."""
        for key, chunk in list(self.chunks.items()):
            if chunk.zone in (ZONE_ACTIVE, ZONE_CACHED):
                self._purge(key, chunk)

    def purge_all(self) -> None:
        """Release every resident chunk and forget pending loads and failures."""
        for key, chunk in list(self.chunks.items()):
            self._purge(key, chunk)
        for future in self._pending.values():
            if not future.cancel():
                self._abandoned.append(future)
        self._pending.clear()
        self._failed.clear()

    def change_prompt(self, prompt: str) -> None:
        """
        Switch worlds. Client-side renderables are purged; chunks cached on
        the server stay, so revisiting a prompt is instant.
        """
        self.purge_all()
        self.prompt = prompt
        if not self.billing_halted:
            return

        self.billing_halted = False
        self.billing_message = None
        if self.api is None:
            return
        try:
            self.api.clear_error()
        except requests.RequestException as e:
            logger.warning("[Client] Failed to clear server API error: %s", e)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ── status ────────────────────────────────────────────────
    @property
    def loaded_count(self) -> int:
        return len(self.chunks)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def status_line(self) -> str:
        if self.billing_halted:
            return f"API ERROR: {self.billing_message}"
        active = sum(1 for c in self.chunks.values() if c.zone == ZONE_ACTIVE)
        cached = sum(1 for c in self.chunks.values() if c.zone == ZONE_CACHED)
        return f"chunks: {active} active / {cached} cached / {len(self._pending)} loading"

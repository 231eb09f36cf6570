"""
HTTP client for the gridworld chunk API.

Transport errors surface as ``requests.RequestException``; HTTP error
statuses do not raise, because callers branch on the body's ``status``
field (e.g. ``billing_error`` arrives with a 402).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import requests

logger = logging.getLogger("gridworld.client.api")


@dataclass
class ApiResponse:
    status_code: int
    data: Optional[Dict[str, Any]]

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def status(self) -> Optional[str]:
        return (self.data or {}).get("status")

    @property
    def error(self) -> Optional[str]:
        return (self.data or {}).get("error")


def _json_or_none(r: requests.Response) -> Optional[Dict[str, Any]]:
    try:
        body = r.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


class ChunkApiClient:
    def __init__(
        self,
        base_url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/") + "/"
        self.session = session or requests.Session()
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "ChunkApiClient":
        return cls(settings.server_url, timeout=settings.request_timeout)

    def url_for(self, path: str) -> str:
        return urljoin(self.base_url, path.lstrip("/"))

    def get_chunk(self, x: int, y: int, prompt: str) -> ApiResponse:
        r = self.session.get(
            self.url_for("/api/chunk"),
            params={"x": x, "y": y, "prompt": prompt},
            timeout=self.timeout,
        )
        return ApiResponse(r.status_code, _json_or_none(r))

    def download_asset(self, asset_url: str) -> bytes:
        """Fetch asset bytes; relative ``/chunks/...`` paths resolve against the server."""
        url = asset_url if asset_url.startswith(("http://", "https://")) else self.url_for(asset_url)
        r = self.session.get(url, timeout=self.timeout)
        r.raise_for_status()
        return r.content

    def chunk_statuses(self, prompt: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"prompt": prompt} if prompt else None
        r = self.session.get(self.url_for("/api/chunks/status"), params=params, timeout=self.timeout)
        r.raise_for_status()
        return r.json()

    def list_prompts(self) -> List[Dict[str, Any]]:
        r = self.session.get(self.url_for("/api/prompts"), timeout=self.timeout)
        r.raise_for_status()
        return r.json()

    def reset(self, prompt: Optional[str] = None) -> Dict[str, Any]:
        body = {"prompt": prompt} if prompt else {}
        r = self.session.post(self.url_for("/api/chunks/reset"), json=body, timeout=self.timeout)
        r.raise_for_status()
        return r.json()

    def clear_error(self) -> None:
        r = self.session.post(self.url_for("/api/clear-error"), timeout=self.timeout)
        r.raise_for_status()
        logger.info("[Client] Server API error cleared")

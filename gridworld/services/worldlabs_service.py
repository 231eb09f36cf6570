"""
World Labs (Marble) API HTTP Client.

Handles authentication, headers, error parsing, and retries for the
World Labs world-generation API.

Base URL: https://api.worldlabs.ai
Auth:     WLT-Api-Key: <WORLDLABS_API_KEY>

Endpoints used:
  POST /marble/v1/worlds:generate          → start generation, returns operation_id
  GET  /marble/v1/operations/{id}          → operation status

A finished operation looks like:
  {"done": true, "error": null,
   "response": {"id": "...",
                "assets": {"splats": {"spz_urls": {"500k": "...", "full_res": "..."}},
                           "imagery": {"pano_url": "..."}}}}

Asset URLs are not authenticated and may expire.
Always download and persist them immediately.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests
from requests.exceptions import ConnectionError as RequestsConnectionError, Timeout

from gridworld.utils import log_event

logger = logging.getLogger("gridworld.worldlabs")


# ── Timeouts ─────────────────────────────────────────────────
CONNECT_TIMEOUT = 15        # seconds
READ_TIMEOUT = 60           # seconds for API calls
DOWNLOAD_TIMEOUT = 300      # seconds for asset downloads
MAX_RETRIES = 2
BASE_RETRY_DELAY = 2        # exponential backoff base

GENERATE_PATH = "/marble/v1/worlds:generate"
OPERATION_PATH = "/marble/v1/operations/{operation_id}"

# Preferred splat variant first; full resolution as fallback.
SPZ_VARIANTS = ("500k", "full_res")


# ── Exceptions ───────────────────────────────────────────────
class WorldLabsError(Exception):
    """Typed exception for World Labs API errors."""

    def __init__(self, status_code: int, message: str, *, retryable: bool = False):
        self.status_code = status_code
        self.message = message
        self.retryable = retryable
        super().__init__(f"World Labs API error {status_code}: {message}")


class WorldLabsConfigError(WorldLabsError):
    """Raised when World Labs is not configured (missing API key)."""

    def __init__(self, message: str = "WORLDLABS_API_KEY is not set"):
        super().__init__(status_code=0, message=message, retryable=False)


class WorldLabsAuthError(WorldLabsError):
    """Raised for 401/403 authentication failures."""

    def __init__(self, message: str = "World Labs authentication failed"):
        super().__init__(status_code=401, message=message, retryable=False)


class WorldLabsBillingError(WorldLabsError):
    """Raised for 402 - the account is out of credits. Never retried automatically."""

    def __init__(self, message: str = "Payment Required (out of API credits)"):
        super().__init__(status_code=402, message=message, retryable=False)


class WorldLabsQuotaError(WorldLabsError):
    """Raised for 429 rate-limit / quota exhaustion."""

    def __init__(self, message: str = "World Labs rate limit exceeded"):
        super().__init__(status_code=429, message=message, retryable=True)


class WorldLabsValidationError(WorldLabsError):
    """Raised for 400 validation errors."""

    def __init__(self, message: str = "World Labs validation failed"):
        super().__init__(status_code=400, message=message, retryable=False)


class OperationFailedError(WorldLabsError):
    """The operation finished with an error payload."""

    def __init__(self, operation_id: str, message: str):
        self.operation_id = operation_id
        super().__init__(status_code=0, message=f"Generation failed: {message}", retryable=True)


class MissingAssetError(WorldLabsError):
    """The operation finished but carried no usable splat URL."""

    def __init__(self, operation_id: Optional[str]):
        self.operation_id = operation_id
        super().__init__(status_code=0, message="No SPZ URL returned from API", retryable=True)


class GenerationTimeoutError(WorldLabsError):
    """The operation did not finish before the job deadline."""

    def __init__(self, operation_id: str, timeout: float):
        self.operation_id = operation_id
        super().__init__(
            status_code=0,
            message=f"Operation {operation_id} not done after {timeout:.0f}s",
            retryable=True,
        )


class GenerationCancelledError(WorldLabsError):
    """Waiting was abandoned because the cancellation token was set."""

    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__(status_code=0, message=f"Wait for operation {operation_id} cancelled")


# ── Internal helpers ─────────────────────────────────────────
def _parse_error(r: requests.Response) -> WorldLabsError:
    """Convert a non-2xx response into a typed WorldLabsError."""
    body_text = r.text[:500] if r.text else ""

    try:
        body = r.json()
        msg = body.get("detail", body.get("error", body.get("message", body_text)))
        if isinstance(msg, dict):
            msg = msg.get("message") or json.dumps(msg)
    except (ValueError, AttributeError):
        msg = body_text

    if r.status_code in (401, 403):
        return WorldLabsAuthError(str(msg))
    if r.status_code == 402:
        return WorldLabsBillingError(f"HTTP 402 - Payment Required: {msg}" if msg else "HTTP 402 - Payment Required")
    if r.status_code == 429:
        return WorldLabsQuotaError(str(msg))
    if r.status_code == 400:
        return WorldLabsValidationError(str(msg))

    retryable = r.status_code >= 500
    return WorldLabsError(r.status_code, str(msg), retryable=retryable)


def _should_retry(err: WorldLabsError) -> bool:
    # 429 is left to the queue's backoff; only transport errors and 5xx retry here
    return err.status_code == 0 or err.status_code >= 500


def build_world_prompt(
    prompt: str,
    image_base64: Optional[str] = None,
    image_extension: str = "png",
) -> Dict[str, Any]:
    """Text prompt, optionally anchored by a base64 image seed."""
    if not image_base64:
        return {"type": "text", "text_prompt": prompt}
    return {
        "type": "image",
        "image_prompt": {
            "source": "data_base64",
            "data_base64": image_base64,
            "extension": image_extension,
        },
        "text_prompt": prompt,
    }


@dataclass
class WorldAssets:
    world_id: Optional[str]
    spz_url: Optional[str]
    panorama_url: Optional[str]


def extract_world_assets(operation: Dict[str, Any]) -> WorldAssets:
    """Pick the splat and panorama URLs out of a finished operation."""
    world = (operation or {}).get("response") or {}
    assets = world.get("assets") or {}
    spz_urls = (assets.get("splats") or {}).get("spz_urls") or {}
    spz_url = next((spz_urls[v] for v in SPZ_VARIANTS if spz_urls.get(v)), None)
    panorama_url = (assets.get("imagery") or {}).get("pano_url")
    return WorldAssets(world_id=world.get("id"), spz_url=spz_url, panorama_url=panorama_url or None)


# ── Client ───────────────────────────────────────────────────
class WorldLabsClient:
    """Thin stateful wrapper around the World Labs REST API."""

    name = "worldlabs"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.worldlabs.ai",
        model: str = "Marble 0.1-mini",
        *,
        session: Optional[requests.Session] = None,
        retry_delay: float = BASE_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.session = session or requests.Session()
        self.retry_delay = retry_delay
        self._sleep = sleep

    @classmethod
    def from_config(cls, cfg) -> "WorldLabsClient":
        return cls(cfg.WORLDLABS_API_KEY, cfg.WORLDLABS_BASE_URL, cfg.WORLDLABS_MODEL)

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise WorldLabsConfigError()
        return {
            "WLT-Api-Key": self.api_key,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST once. Generation requests are billable, so they are never
        retried here.
        """
        url = f"{self.base_url}{path}"
        try:
            r = self.session.post(
                url,
                json=payload,
                headers=self._headers(),
                timeout=(CONNECT_TIMEOUT, READ_TIMEOUT),
            )
        except (Timeout, RequestsConnectionError) as e:
            raise WorldLabsError(0, f"Connection error: {e}", retryable=True) from e

        if not r.ok:
            raise _parse_error(r)
        try:
            return r.json()
        except ValueError as e:
            raise WorldLabsError(r.status_code, f"Malformed JSON from POST {path}") from e

    def _get(self, path: str) -> Dict[str, Any]:
        """GET with retries on 5xx and connection errors."""
        url = f"{self.base_url}{path}"
        headers = self._headers()

        for attempt in range(1, MAX_RETRIES + 2):  # 1-indexed, +1 for initial try
            try:
                r = self.session.get(url, headers=headers, timeout=(CONNECT_TIMEOUT, READ_TIMEOUT))
                if r.ok:
                    try:
                        return r.json()
                    except ValueError as e:
                        raise WorldLabsError(r.status_code, f"Malformed JSON from GET {path}") from e
                err = _parse_error(r)
            except (Timeout, RequestsConnectionError) as e:
                err = WorldLabsError(0, f"Connection error: {e}", retryable=True)

            if not _should_retry(err) or attempt > MAX_RETRIES:
                raise err

            delay = self.retry_delay * (2 ** (attempt - 1))
            logger.warning("[WorldLabs] GET %s retry %s/%s after %ss: %s", path, attempt, MAX_RETRIES, delay, err.message)
            self._sleep(delay)

        raise WorldLabsError(0, "Max retries exceeded")

    # ── public API ────────────────────────────────────────────
    def start_generation(
        self,
        prompt: str,
        image_base64: Optional[str] = None,
        image_extension: str = "png",
    ) -> str:
        """Start a world generation and return its operation id."""
        body = {
            "display_name": f"chunk_{int(time.time() * 1000)}",
            "model": self.model,
            "world_prompt": build_world_prompt(prompt, image_base64, image_extension),
        }
        log_event("worldlabs/generate:request", body)
        resp = self._post(GENERATE_PATH, body)
        operation_id = resp.get("operation_id")
        if not operation_id:
            raise WorldLabsError(0, "World Labs returned no operation_id", retryable=True)
        return operation_id

    def get_operation(self, operation_id: str) -> Dict[str, Any]:
        return self._get(OPERATION_PATH.format(operation_id=operation_id))

    def download(self, url: str) -> bytes:
        """Download an asset (splat or panorama). No auth needed."""
        try:
            r = self.session.get(url, timeout=(CONNECT_TIMEOUT, DOWNLOAD_TIMEOUT), allow_redirects=True)
        except (Timeout, RequestsConnectionError) as e:
            raise WorldLabsError(0, f"Download connection error: {e}", retryable=True) from e
        if not r.ok:
            raise WorldLabsError(r.status_code, f"Failed to download asset: HTTP {r.status_code}")
        logger.debug("[WorldLabs] Downloaded %s bytes from %s", len(r.content), url[:100])
        return r.content


# ── Operation wait ───────────────────────────────────────────
class OperationWatch:
    """
    Polling state machine for one provider operation.

    pending → done | failed | timed_out | cancelled

    ``step()`` performs at most one status request. ``wait()`` drives
    ``step()`` and sleeps on the cancellation token between polls, so
    setting the token (or passing the deadline) ends the wait promptly.
    Provider errors raised by a status request propagate unchanged.
    """

    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    def __init__(
        self,
        client: WorldLabsClient,
        operation_id: str,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.operation_id = operation_id
        self.cancel = cancel or threading.Event()
        self.timeout = timeout
        self._clock = clock
        self._deadline = clock() + timeout if timeout else None
        self.state = self.PENDING
        self.result: Optional[Dict[str, Any]] = None
        self.error: Optional[str] = None
        self.polls = 0

    def step(self) -> str:
        if self.state != self.PENDING:
            return self.state
        if self.cancel.is_set():
            self.state = self.CANCELLED
            return self.state
        if self._deadline is not None and self._clock() >= self._deadline:
            self.state = self.TIMED_OUT
            return self.state

        op = self.client.get_operation(self.operation_id)
        self.polls += 1
        if op.get("done"):
            err = op.get("error")
            if err:
                self.state = self.FAILED
                self.error = err.get("message") if isinstance(err, dict) and err.get("message") else json.dumps(err)
            else:
                self.state = self.DONE
                self.result = op
        return self.state

    def wait(self, interval: float) -> Dict[str, Any]:
        """Block until the operation leaves ``pending``; return the finished operation."""
        while self.step() == self.PENDING:
            self.cancel.wait(interval)

        if self.state == self.DONE:
            return self.result
        if self.state == self.FAILED:
            raise OperationFailedError(self.operation_id, self.error or "unknown error")
        if self.state == self.TIMED_OUT:
            raise GenerationTimeoutError(self.operation_id, self.timeout or 0)
        raise GenerationCancelledError(self.operation_id)

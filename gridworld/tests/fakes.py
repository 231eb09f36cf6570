"""In-process stand-ins for the provider, executors, timers and clock."""

from __future__ import annotations

import io
from concurrent.futures import Future
from typing import Any, Dict, List, Optional

from PIL import Image


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, secs: float) -> None:
        self.now += secs


class ManualExecutor:
    """Collects submitted calls; the test decides when each one runs."""

    def __init__(self):
        self.submitted: List[tuple] = []
        self.shut_down = False

    def submit(self, fn, *args, **kwargs) -> Future:
        future: Future = Future()
        self.submitted.append((future, fn, args, kwargs))
        return future

    @property
    def pending(self) -> int:
        return len(self.submitted)

    def run_next(self) -> Any:
        future, fn, args, kwargs = self.submitted.pop(0)
        if not future.set_running_or_notify_cancel():
            return None
        try:
            result = fn(*args, **kwargs)
        except Exception as e:
            future.set_exception(e)
            return None
        future.set_result(result)
        return result

    def run_all(self) -> None:
        while self.submitted:
            self.run_next()

    def shutdown(self, wait: bool = True, cancel_futures: bool = False) -> None:
        self.shut_down = True


class ImmediateExecutor(ManualExecutor):
    """Runs every submitted call synchronously."""

    def submit(self, fn, *args, **kwargs) -> Future:
        future = super().submit(fn, *args, **kwargs)
        self.run_next()
        return future


class FakeTimer:
    created: List["FakeTimer"] = []

    def __init__(self, delay: float, fn):
        self.delay = delay
        self.fn = fn
        self.daemon = False
        self.started = False
        self.cancelled = False
        FakeTimer.created.append(self)

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        self.fn()


def finished_operation(world_id: str = "world-1", spz: Optional[Dict[str, str]] = None,
                       pano_url: Optional[str] = "https://cdn.example/pano.png") -> Dict[str, Any]:
    spz_urls = {"500k": "https://cdn.example/500k.spz", "full_res": "https://cdn.example/full.spz"} if spz is None else spz
    return {
        "done": True,
        "error": None,
        "response": {
            "id": world_id,
            "assets": {
                "splats": {"spz_urls": spz_urls},
                "imagery": {"pano_url": pano_url},
            },
        },
    }


class FakeProvider:
    """Stands in for WorldLabsClient."""

    def __init__(self, configured: bool = True):
        self.configured = configured
        self.started: List[Dict[str, Any]] = []
        self.start_error: Optional[Exception] = None
        # operation id -> responses returned in order (last one repeats)
        self.operations: Dict[str, List[Dict[str, Any]]] = {}
        self.default_operation = finished_operation()
        self.downloads: Dict[str, bytes] = {}
        self.downloaded: List[str] = []
        self.on_poll = None

    def is_configured(self) -> bool:
        return self.configured

    def start_generation(self, prompt, image_base64=None, image_extension="png") -> str:
        if self.start_error is not None:
            raise self.start_error
        self.started.append({"prompt": prompt, "image_base64": image_base64, "image_extension": image_extension})
        return f"op-{len(self.started)}"

    def get_operation(self, operation_id: str) -> Dict[str, Any]:
        if self.on_poll:
            self.on_poll(operation_id)
        responses = self.operations.get(operation_id)
        if not responses:
            return self.default_operation
        if len(responses) > 1:
            return responses.pop(0)
        return responses[0]

    def download(self, url: str) -> bytes:
        self.downloaded.append(url)
        return self.downloads.get(url, b"SPZDATA")


def make_png(width: int = 40, height: int = 20, color=(10, 20, 30)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()



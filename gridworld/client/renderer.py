"""
Renderer seam.

The chunk manager never touches a scene graph directly. It hands asset
bytes to a renderer, gets back an opaque handle, and from then on only
adjusts fade/visibility or releases the handle.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Tuple

logger = logging.getLogger("gridworld.client.renderer")

Position = Tuple[float, float, float]


class Renderer:
    """Interface implemented by a real scene integration."""

    def load(self, data: bytes, position: Position) -> Any:
        """
        Instantiate a renderable from asset bytes at a world position.
        Called from loader worker threads, concurrently with release().
        """
        raise NotImplementedError

    def apply_fade(self, handle: Any, fade: float, visible: bool) -> None:
        raise NotImplementedError

    def release(self, handle: Any) -> None:
        """Free everything held by the renderable."""
        raise NotImplementedError


@dataclass
class HeadlessHandle:
    id: int
    position: Position
    size: int
    fade: float = 0.0
    visible: bool = False
    released: bool = False


class HeadlessRenderer(Renderer):
    """Keeps renderables as plain records; used by the fly-through driver and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self._next_id = 1
        self.live: Dict[int, HeadlessHandle] = {}
        self.released_count = 0

    def load(self, data: bytes, position: Position) -> HeadlessHandle:
        with self._lock:
            handle = HeadlessHandle(id=self._next_id, position=position, size=len(data))
            self._next_id += 1
            self.live[handle.id] = handle
        logger.debug("[Render] Loaded #%s at %s (%s bytes)", handle.id, position, handle.size)
        return handle

    def apply_fade(self, handle: HeadlessHandle, fade: float, visible: bool) -> None:
        handle.fade = fade
        handle.visible = visible

    def release(self, handle: HeadlessHandle) -> None:
        with self._lock:
            if handle.released:
                return
            handle.released = True
            handle.visible = False
            self.live.pop(handle.id, None)
            self.released_count += 1

"""Tests for the headless renderer."""

from __future__ import annotations

import threading

from gridworld.client.renderer import HeadlessRenderer


def test_concurrent_loads_get_unique_handles():
    renderer = HeadlessRenderer()
    barrier = threading.Barrier(8)
    handles = []

    def load_many():
        barrier.wait()
        for _ in range(50):
            handles.append(renderer.load(b"SPZ", (0.0, 0.0, 0.0)))

    threads = [threading.Thread(target=load_many) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len({h.id for h in handles}) == 400
    assert len(renderer.live) == 400


def test_release_is_idempotent():
    renderer = HeadlessRenderer()
    handle = renderer.load(b"SPZ", (1.0, 0.0, 2.0))
    renderer.apply_fade(handle, 0.5, True)

    renderer.release(handle)
    renderer.release(handle)

    assert handle.released is True
    assert handle.visible is False
    assert renderer.released_count == 1
    assert renderer.live == {}

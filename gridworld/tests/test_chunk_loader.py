"""Tests for the client chunk loader."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from gridworld.client.api_client import ApiResponse, ChunkApiClient
from gridworld.client.chunk_loader import (
    BillingHaltError,
    ChunkLoader,
    ChunkLoadError,
    ChunkTimeoutError,
    GenerationFailedError,
)
from gridworld.client.renderer import HeadlessRenderer
from gridworld.client.settings import ClientSettings


class ScriptedApi:
    """Returns queued responses for get_chunk; exceptions in the script are raised."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = 0
        self.downloads = []

    def get_chunk(self, x, y, prompt):
        self.calls += 1
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def download_asset(self, url):
        self.downloads.append(url)
        return b"SPZ"


def ok(status, **extra):
    return ApiResponse(200, {"status": status, **extra})


def _loader(api, **settings):
    sleeps = []
    loader = ChunkLoader(
        api,
        HeadlessRenderer(),
        settings=ClientSettings(**settings),
        sleep=sleeps.append,
    )
    return loader, sleeps


def test_completed_chunk_loads_without_polling():
    api = ScriptedApi(ok("completed", spzUrl="/chunks/a.spz"))
    loader, sleeps = _loader(api)

    state = loader.load_chunk(2, -1, "P")

    assert (state.x, state.y) == (2, -1)
    assert state.zone == "active"
    assert state.fade == 0.0
    assert state.handle.position == (40.0, 0.0, -20.0)
    assert api.downloads == ["/chunks/a.spz"]
    assert sleeps == []


def test_polls_until_completed():
    api = ScriptedApi(
        ok("started"),
        requests.ConnectionError("blip"),
        ApiResponse(500, None),
        ok("generating"),
        ok("completed", spzUrl="/chunks/b.spz"),
    )
    loader, sleeps = _loader(api, poll_interval=3.0)

    loader.load_chunk(0, 0, "P")
    assert sleeps == [3.0, 3.0, 3.0, 3.0]
    assert api.downloads == ["/chunks/b.spz"]


def test_initial_network_error():
    loader, _ = _loader(ScriptedApi(requests.ConnectionError("down")))
    with pytest.raises(ChunkLoadError):
        loader.load_chunk(0, 0, "P")


def test_initial_http_error():
    loader, _ = _loader(ScriptedApi(ApiResponse(503, {"error": "no key", "status": "error"})))
    with pytest.raises(ChunkLoadError):
        loader.load_chunk(0, 0, "P")


def test_billing_error_on_first_request():
    api = ScriptedApi(ApiResponse(402, {"error": "out of credits", "status": "billing_error"}))
    loader, _ = _loader(api)
    with pytest.raises(BillingHaltError, match="out of credits"):
        loader.load_chunk(0, 0, "P")


def test_billing_error_while_polling():
    api = ScriptedApi(ok("started"), ApiResponse(402, {"error": "halted", "status": "billing_error"}))
    loader, _ = _loader(api)
    with pytest.raises(BillingHaltError):
        loader.load_chunk(0, 0, "P")


def test_server_side_failure():
    api = ScriptedApi(ok("generating"), ok("error"))
    loader, _ = _loader(api)
    with pytest.raises(GenerationFailedError):
        loader.load_chunk(0, 0, "P")


def test_gives_up_after_max_attempts():
    api = ScriptedApi(ok("started"), *[ok("generating") for _ in range(3)])
    loader, sleeps = _loader(api, max_poll_attempts=3)
    with pytest.raises(ChunkTimeoutError):
        loader.load_chunk(0, 0, "P")
    assert len(sleeps) == 3
    assert api.calls == 4


class TestApiClient:
    def _session(self, status=200, body=None):
        r = MagicMock()
        r.status_code = status
        if body is None:
            r.json.side_effect = ValueError("not json")
        else:
            r.json.return_value = body
        session = MagicMock()
        session.get.return_value = r
        return session

    def test_get_chunk(self):
        session = self._session(200, {"status": "started"})
        api = ChunkApiClient("http://server:3001/", session=session)

        resp = api.get_chunk(2, -1, "P")
        assert resp.ok and resp.status == "started"
        args, kwargs = session.get.call_args
        assert args[0] == "http://server:3001/api/chunk"
        assert kwargs["params"] == {"x": 2, "y": -1, "prompt": "P"}

    def test_non_json_body(self):
        api = ChunkApiClient("http://server", session=self._session(502))
        resp = api.get_chunk(0, 0, "P")
        assert resp.ok is False
        assert resp.data is None
        assert resp.status is None

    def test_relative_asset_urls_resolve_against_server(self):
        session = self._session(200, {})
        session.get.return_value.content = b"SPZ"
        api = ChunkApiClient("http://server:3001", session=session)

        assert api.download_asset("/chunks/a.spz") == b"SPZ"
        assert session.get.call_args[0][0] == "http://server:3001/chunks/a.spz"
        api.download_asset("https://cdn.example/b.spz")
        assert session.get.call_args[0][0] == "https://cdn.example/b.spz"

    def test_listing_and_reset_endpoints(self):
        session = self._session(200, [{"x": 0, "y": 0, "status": "completed"}])
        session.post.return_value.json.return_value = {"ok": True, "deleted": 3, "files": 2}
        api = ChunkApiClient("http://server:3001", session=session)

        assert api.chunk_statuses("P") == [{"x": 0, "y": 0, "status": "completed"}]
        args, kwargs = session.get.call_args
        assert args[0] == "http://server:3001/api/chunks/status"
        assert kwargs["params"] == {"prompt": "P"}

        api.list_prompts()
        assert session.get.call_args[0][0] == "http://server:3001/api/prompts"

        assert api.reset("P")["deleted"] == 3
        args, kwargs = session.post.call_args
        assert args[0] == "http://server:3001/api/chunks/reset"
        assert kwargs["json"] == {"prompt": "P"}

"""Shared fixtures for the gridworld test suite."""

from __future__ import annotations

import pytest

from gridworld.config import Config
from gridworld.db import Database
from gridworld.services.asset_storage import AssetStorage
from gridworld.services.chunk_store import ChunkStore
from gridworld.services.generation_queue import GenerationQueue
from gridworld.tests.fakes import FakeClock, FakeProvider, FakeTimer, ManualExecutor


@pytest.fixture
def db(tmp_path) -> Database:
    database = Database(sqlite_path=tmp_path / "data" / "chunks.db")
    database.migrate()
    return database


@pytest.fixture
def store(db) -> ChunkStore:
    return ChunkStore(db)


@pytest.fixture
def assets(tmp_path) -> AssetStorage:
    return AssetStorage(tmp_path / "chunks")


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def executor() -> ManualExecutor:
    return ManualExecutor()


@pytest.fixture
def timers():
    FakeTimer.created = []
    return FakeTimer.created


@pytest.fixture
def queue(store, provider, assets, clock, executor, timers) -> GenerationQueue:
    return GenerationQueue(
        store,
        provider,
        assets,
        concurrency=1,
        backoff_secs=60,
        poll_interval=0,
        clock=clock,
        executor=executor,
        timer_factory=FakeTimer,
    )


@pytest.fixture
def test_config(tmp_path) -> Config:
    return Config(
        _DATA_DIR_RAW=str(tmp_path / "data"),
        _CHUNKS_DIR_RAW=str(tmp_path / "chunks"),
        _DATABASE_URL_RAW="",
        _WORLDLABS_API_KEY_RAW="test-key",
        DEFAULT_PROMPT="A beautiful natural landscape",
    )


@pytest.fixture
def app(test_config, db, assets, provider, queue):
    from gridworld.app import create_app

    return create_app(test_config, db=db, assets=assets, provider=provider, queue=queue)


@pytest.fixture
def client(app):
    return app.test_client()

"""Tests for the chunk generation queue and worker pipeline."""

from __future__ import annotations

from gridworld.services.chunk_store import (
    STATUS_BILLING_ERROR,
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_GENERATING,
)
from gridworld.services.continuity import ContinuitySeeder
from gridworld.services.generation_queue import GenerationJob, GenerationQueue
from gridworld.services.worldlabs_service import (
    WorldLabsBillingError,
    WorldLabsError,
    WorldLabsQuotaError,
)
from gridworld.tests.fakes import FakeTimer, ManualExecutor, finished_operation, make_png


def _request(store, queue, x, y, prompt="P"):
    """What the chunk route does for a new coordinate."""
    assert store.insert_if_absent(x, y, prompt)
    return queue.enqueue(x, y, prompt)


class TestEnqueue:
    def test_duplicate_key_is_ignored(self, queue, executor, store):
        # Fill the single worker slot so later jobs stay queued
        _request(store, queue, 0, 0)
        assert queue.enqueue(1, 0, "P") is True
        assert queue.enqueue(1, 0, "P") is False
        assert queue.pending_keys() == ["1,0,P"]

    def test_same_coords_other_prompt_are_separate_jobs(self, queue, store):
        _request(store, queue, 0, 0)
        queue.enqueue(1, 0, "P")
        queue.enqueue(1, 0, "Q")
        assert queue.pending_keys() == ["1,0,P", "1,0,Q"]

    def test_job_key(self):
        assert GenerationJob(2, -1, "P", 0.0).key == "2,-1,P"


class TestConcurrency:
    def test_active_never_exceeds_cap(self, store, provider, assets, clock, timers):
        executor = ManualExecutor()
        queue = GenerationQueue(
            store, provider, assets, concurrency=2, poll_interval=0,
            clock=clock, executor=executor, timer_factory=FakeTimer,
        )
        for x in range(5):
            _request(store, queue, x, 0)

        assert queue.active_count == 2
        assert executor.pending == 2
        assert queue.pending_count == 3

        executor.run_next()
        assert queue.active_count == 2
        assert queue.pending_count == 2

        executor.run_all()
        assert queue.active_count == 0
        assert queue.pending_count == 0
        assert all(r["status"] == STATUS_COMPLETED for r in store.list_statuses("P"))

    def test_single_slot_runs_jobs_in_order(self, queue, executor, store, provider):
        for x in range(3):
            _request(store, queue, x, 0)
        assert executor.pending == 1

        executor.run_all()
        assert len(provider.started) == 3
        assert queue.active_count == 0


class TestPipeline:
    def test_success_downloads_asset_and_completes(self, queue, executor, store, provider, assets):
        _request(store, queue, 2, -1)
        executor.run_all()

        record = store.get(2, -1, "P")
        assert record.status == STATUS_COMPLETED
        assert record.operation_id == "op-1"
        assert record.world_id == "world-1"
        assert record.panorama_url == "https://cdn.example/pano.png"

        filename = assets.filename_for(2, -1, "P")
        assert record.asset_path == f"/chunks/{filename}"
        assert assets.path_for(filename).read_bytes() == b"SPZDATA"
        assert provider.downloaded == ["https://cdn.example/500k.spz"]

    def test_full_res_used_when_500k_missing(self, queue, executor, store, provider):
        provider.default_operation = finished_operation(spz={"full_res": "https://cdn.example/full.spz"})
        _request(store, queue, 0, 0)
        executor.run_all()
        assert provider.downloaded == ["https://cdn.example/full.spz"]
        assert store.get(0, 0, "P").status == STATUS_COMPLETED

    def test_missing_asset_url_is_error(self, queue, executor, store, provider):
        provider.default_operation = finished_operation(spz={})
        _request(store, queue, 0, 0)
        executor.run_all()
        assert store.get(0, 0, "P").status == STATUS_ERROR

    def test_polls_until_done(self, queue, executor, store, provider):
        provider.operations["op-1"] = [{"done": False}, {"done": False}, finished_operation()]
        _request(store, queue, 0, 0)
        executor.run_all()
        assert store.get(0, 0, "P").status == STATUS_COMPLETED

    def test_operation_error_is_error(self, queue, executor, store, provider):
        provider.operations["op-1"] = [{"done": True, "error": {"message": "nsfw"}}]
        _request(store, queue, 0, 0)
        executor.run_all()
        assert store.get(0, 0, "P").status == STATUS_ERROR

    def test_generic_failure_is_error(self, queue, executor, store, provider):
        provider.start_error = WorldLabsError(500, "upstream down")
        _request(store, queue, 0, 0)
        executor.run_all()
        assert store.get(0, 0, "P").status == STATUS_ERROR
        assert not queue.is_halted

    def test_reset_during_generation_discards_asset(self, queue, executor, store, provider, assets):
        provider.on_poll = lambda op_id: store.delete(0, 0, "P")
        _request(store, queue, 0, 0)
        executor.run_all()

        assert store.get(0, 0, "P") is None
        assert not assets.path_for(assets.filename_for(0, 0, "P")).exists()

    def test_stale_job_cannot_complete_a_newer_request(self, queue, executor, store, provider, assets):
        def reset_and_request_again(op_id):
            if op_id == "op-1" and store.get(0, 0, "P").operation_id == "op-1":
                store.delete(0, 0, "P")
                _request(store, queue, 0, 0)

        provider.on_poll = reset_and_request_again
        _request(store, queue, 0, 0)
        executor.run_all()

        record = store.get(0, 0, "P")
        assert len(provider.started) == 2
        assert record.status == STATUS_COMPLETED
        assert record.operation_id == "op-2"
        assert assets.path_for(assets.filename_for(0, 0, "P")).exists()

    def test_stale_job_keeps_asset_of_completed_successor(self, queue, executor, store, provider, assets):
        fired = []

        def reset_and_regenerate(op_id):
            if op_id == "op-1" and not fired:
                fired.append(op_id)
                store.delete(0, 0, "P")
                store.insert_if_absent(0, 0, "P")
                assert queue.generate_chunk(GenerationJob(0, 0, "P", 0.0)) is True

        provider.on_poll = reset_and_regenerate
        _request(store, queue, 0, 0)
        executor.run_all()

        record = store.get(0, 0, "P")
        assert record.status == STATUS_COMPLETED
        assert record.operation_id == "op-2"
        assert assets.path_for(assets.filename_for(0, 0, "P")).exists()

    def test_timeout_is_error(self, store, provider, assets, clock, executor, timers):
        queue = GenerationQueue(
            store, provider, assets, poll_interval=0, generation_timeout=30,
            clock=clock, executor=executor, timer_factory=FakeTimer,
        )
        provider.operations["op-1"] = [{"done": False}]
        provider.on_poll = lambda op_id: clock.advance(10)
        _request(store, queue, 0, 0)
        executor.run_all()
        assert store.get(0, 0, "P").status == STATUS_ERROR

    def test_seed_is_sent_with_generation(self, store, provider, assets, clock, executor, timers):
        seeder = ContinuitySeeder(store, lambda url: make_png())
        queue = GenerationQueue(
            store, provider, assets, seeder, poll_interval=0,
            clock=clock, executor=executor, timer_factory=FakeTimer,
        )
        _request(store, queue, 0, 0)
        executor.run_all()
        _request(store, queue, 1, 0)
        executor.run_all()

        assert provider.started[0]["image_base64"] is None
        assert provider.started[1]["image_base64"]
        assert provider.started[1]["image_extension"] == "png"


class TestRateLimitBackoff:
    def test_429_pauses_dispatch_until_deadline(self, queue, executor, store, provider, clock, timers):
        provider.start_error = WorldLabsQuotaError()
        _request(store, queue, 0, 0)
        _request(store, queue, 1, 0)

        executor.run_next()
        assert store.get(0, 0, "P").status == STATUS_ERROR
        assert queue.backoff_until == clock.now + 60
        # Second job is held back and a single re-check is scheduled
        assert executor.pending == 0
        assert queue.pending_count == 1
        assert len(timers) == 1
        assert timers[0].started and timers[0].daemon
        assert timers[0].delay == 60

        provider.start_error = None
        queue.drain()
        assert len(timers) == 1
        assert executor.pending == 0

        clock.advance(60)
        timers[0].fire()
        assert executor.pending == 1
        executor.run_all()
        assert store.get(1, 0, "P").status == STATUS_COMPLETED

    def test_snapshot_reports_backoff(self, queue, executor, store, provider, clock):
        provider.start_error = WorldLabsQuotaError()
        _request(store, queue, 0, 0)
        executor.run_all()
        clock.advance(15)

        snap = queue.snapshot()
        assert snap["backoff_remaining_secs"] == 45
        assert snap["halted"] is False
        assert snap["concurrency"] == 1


class TestBillingHalt:
    def test_402_halts_and_discards_queue(self, queue, executor, store, provider):
        provider.start_error = WorldLabsBillingError("HTTP 402 - Payment Required")
        _request(store, queue, 0, 0)
        _request(store, queue, 1, 0)
        _request(store, queue, 2, 0)

        executor.run_all()
        assert queue.is_halted
        assert "402" in queue.halt_reason
        assert store.get(0, 0, "P").status == STATUS_BILLING_ERROR
        assert queue.pending_count == 0
        assert len(provider.started) == 0

        # Nothing is dispatched while halted
        assert store.insert_if_absent(5, 5, "P")
        queue.enqueue(5, 5, "P")
        assert executor.pending == 0

        # Rows of discarded jobs are released so the coordinates can be requested again
        assert store.get(1, 0, "P") is None
        assert store.get(2, 0, "P") is None
        assert store.get(5, 5, "P") is None

    def test_discarded_coordinates_generate_after_clear(self, queue, executor, store, provider):
        provider.start_error = WorldLabsBillingError()
        _request(store, queue, 0, 0)
        _request(store, queue, 1, 0)
        executor.run_all()

        queue.clear_halt()
        provider.start_error = None
        _request(store, queue, 1, 0)
        executor.run_all()
        assert store.get(1, 0, "P").status == STATUS_COMPLETED

    def test_clear_halt_deletes_billing_rows(self, queue, executor, store, provider):
        provider.start_error = WorldLabsBillingError()
        _request(store, queue, 0, 0)
        executor.run_all()

        assert queue.clear_halt() == 1
        assert not queue.is_halted
        assert store.get(0, 0, "P") is None

        provider.start_error = None
        _request(store, queue, 0, 0)
        executor.run_all()
        assert store.get(0, 0, "P").status == STATUS_COMPLETED


class TestDiscardAndShutdown:
    def test_discard_by_prompt(self, queue, store):
        _request(store, queue, 0, 0, "P")
        _request(store, queue, 1, 0, "P")
        _request(store, queue, 1, 0, "Q")

        assert queue.discard("P") == 1
        assert queue.pending_keys() == ["1,0,Q"]
        assert store.get(1, 0, "P") is None
        assert store.get(0, 0, "P").status == STATUS_GENERATING
        assert queue.discard() == 1
        assert queue.pending_count == 0

    def test_shutdown_cancels_timer_and_executor(self, queue, executor, store, provider, timers):
        provider.start_error = WorldLabsQuotaError()
        _request(store, queue, 0, 0)
        _request(store, queue, 1, 0)
        executor.run_next()

        queue.shutdown()
        assert timers[0].cancelled
        assert executor.shut_down

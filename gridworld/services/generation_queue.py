"""
Chunk Generation Queue - single-flight, concurrency-capped job runner.

A job is one provider generation for one (x, y, prompt) chunk. The queue:

- deduplicates jobs by key ("x,y,prompt"),
- runs at most ``concurrency`` jobs at a time (default 1, i.e. one
  billable provider call in flight for the whole process),
- pauses dispatch after a 429 until the backoff deadline passes,
- halts for good after a 402 (billing) until ``clear_halt()`` is called,
  discarding everything still queued.

Usage from routes:
    queue = get_queue()
    if store.insert_if_absent(x, y, prompt):
        queue.enqueue(x, y, prompt)

Job failures never escape ``generate_chunk``; they are classified and
written to the chunk store. State is in-memory (per-process). On restart,
in-flight rows are purged by ``ChunkStore.purge_stale()`` and regenerated
when a client asks for them again.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Callable, Deque, Dict, List, Optional

from gridworld.db import DatabaseError
from gridworld.services.asset_storage import AssetStorage
from gridworld.services.chunk_store import (
    STATUS_BILLING_ERROR,
    STATUS_COMPLETED,
    STATUS_ERROR,
    ChunkStore,
)
from gridworld.services.continuity import ContinuitySeed, ContinuitySeeder
from gridworld.services.worldlabs_service import (
    MissingAssetError,
    OperationWatch,
    WorldLabsBillingError,
    WorldLabsClient,
    WorldLabsQuotaError,
    extract_world_assets,
)
from gridworld.utils import chunk_key, prompt_hash

logger = logging.getLogger("gridworld.queue")


# ── Configuration defaults ────────────────────────────────────
DEFAULT_CONCURRENCY = 1
RATE_LIMIT_BACKOFF_SECS = 60.0
POLL_INTERVAL_SECS = 3.0


class GenerationJob:
    __slots__ = ("x", "y", "prompt", "queued_at")

    def __init__(self, x: int, y: int, prompt: str, queued_at: float):
        self.x = x
        self.y = y
        self.prompt = prompt
        self.queued_at = queued_at

    @property
    def key(self) -> str:
        return chunk_key(self.x, self.y, self.prompt)

    def __repr__(self) -> str:
        return f"GenerationJob({self.key!r})"


class GenerationQueue:
    """
    Process-wide generation scheduler.

    Thread-safe. Flask request threads enqueue; worker threads finish jobs
    and re-drain. Every state transition happens under one re-entrant lock.
    """

    def __init__(
        self,
        store: ChunkStore,
        provider: WorldLabsClient,
        assets: AssetStorage,
        seeder: Optional[ContinuitySeeder] = None,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        backoff_secs: float = RATE_LIMIT_BACKOFF_SECS,
        poll_interval: float = POLL_INTERVAL_SECS,
        generation_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        executor: Optional[Executor] = None,
        timer_factory: Callable[..., Any] = threading.Timer,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.store = store
        self.provider = provider
        self.assets = assets
        self.seeder = seeder
        self.concurrency = concurrency
        self.backoff_secs = backoff_secs
        self.poll_interval = poll_interval
        self.generation_timeout = generation_timeout
        self._clock = clock
        self._executor = executor or ThreadPoolExecutor(
            max_workers=concurrency, thread_name_prefix="chunk_worker"
        )
        self._timer_factory = timer_factory

        self._queue: Deque[GenerationJob] = deque()
        self._lock = threading.RLock()
        self._active = 0
        self._backoff_until = 0.0
        self._halt_reason: Optional[str] = None
        self._timer = None
        # Cancellation token shared by every in-flight operation wait
        self._cancel = threading.Event()

    @classmethod
    def from_config(cls, cfg, store, provider, assets, seeder=None, **overrides) -> "GenerationQueue":
        options = {
            "concurrency": cfg.MAX_CONCURRENT_GENERATIONS,
            "backoff_secs": cfg.RATE_LIMIT_BACKOFF_SECS,
            "poll_interval": cfg.POLL_INTERVAL_SECS,
            "generation_timeout": cfg.GENERATION_TIMEOUT,
        }
        options.update(overrides)
        return cls(store, provider, assets, seeder, **options)

    # ── state ─────────────────────────────────────────────────
    @property
    def active_count(self) -> int:
        with self._lock:
            return self._active

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def backoff_until(self) -> float:
        with self._lock:
            return self._backoff_until

    @property
    def halt_reason(self) -> Optional[str]:
        with self._lock:
            return self._halt_reason

    @property
    def is_halted(self) -> bool:
        return self.halt_reason is not None

    def pending_keys(self) -> List[str]:
        with self._lock:
            return [job.key for job in self._queue]

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "pending": len(self._queue),
                "active": self._active,
                "concurrency": self.concurrency,
                "backoff_remaining_secs": max(0.0, round(self._backoff_until - self._clock(), 1)),
                "halted": self._halt_reason is not None,
                "halt_reason": self._halt_reason,
            }

    # ── public API ────────────────────────────────────────────
    def enqueue(self, x: int, y: int, prompt: str) -> bool:
        """Queue a job unless the same key is already waiting. Returns True if queued."""
        job = GenerationJob(x, y, prompt, self._clock())
        with self._lock:
            if any(existing.key == job.key for existing in self._queue):
                logger.debug("[Queue] Job %s already queued, skipping", job.key)
                return False
            self._queue.append(job)
        self.drain()
        return True

    def drain(self) -> None:
        """Start as many queued jobs as the concurrency cap and backoff allow."""
        with self._lock:
            halted = self._halt_reason
            dropped = list(self._queue) if halted else []
            if halted:
                self._queue.clear()
        if halted:
            if dropped:
                logger.warning("[Queue] Halted - %s. %s jobs discarded.", halted, len(dropped))
                self._release_rows(dropped)
            return

        with self._lock:
            if self._cancel.is_set():
                return

            while self._active < self.concurrency and self._queue:
                now = self._clock()
                if now < self._backoff_until:
                    wait = self._backoff_until - now
                    logger.info("[Queue] Rate-limited, waiting %ss before next generation", int(wait + 0.999))
                    self._schedule_recheck(wait)
                    return
                job = self._queue.popleft()
                self._active += 1
                self._executor.submit(self._run, job)

            if self._queue:
                logger.info("[Queue] %s jobs waiting, %s active", len(self._queue), self._active)

    def discard(self, prompt: Optional[str] = None) -> int:
        """Drop queued (not running) jobs, for one prompt or all of them."""
        with self._lock:
            dropped = [job for job in self._queue if prompt is None or job.prompt == prompt]
            self._queue = deque(job for job in self._queue if job not in dropped)
        if dropped:
            logger.info("[Queue] Discarded %s queued jobs", len(dropped))
            self._release_rows(dropped)
        return len(dropped)

    def halt(self, reason: str) -> None:
        with self._lock:
            self._halt_reason = reason
        logger.error("[Gen] FATAL: %s. All generation halted.", reason)
        self.drain()

    def clear_halt(self) -> int:
        """Lift a billing halt and forget billing_error rows so they can be retried."""
        with self._lock:
            previous = self._halt_reason
            self._halt_reason = None
        if previous:
            logger.info("[Queue] Clearing API error: %s", previous)
        return self.store.delete_by_status(STATUS_BILLING_ERROR)

    def shutdown(self, wait: bool = False) -> None:
        self._cancel.set()
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        self._executor.shutdown(wait=wait, cancel_futures=True)

    def _release_rows(self, jobs: List[GenerationJob]) -> None:
        """Forget the generating rows of jobs that will never run, so their coordinates can be requested again."""
        for job in jobs:
            try:
                self.store.release_unclaimed(job.x, job.y, job.prompt)
            except DatabaseError as e:
                logger.error("[Queue] Failed to release row of discarded job %s: %s", job.key, e)

    # ── background processing ─────────────────────────────────
    def _schedule_recheck(self, delay: float) -> None:
        if self._timer is not None:
            return
        self._timer = self._timer_factory(delay, self._on_backoff_elapsed)
        self._timer.daemon = True
        self._timer.start()

    def _on_backoff_elapsed(self) -> None:
        with self._lock:
            self._timer = None
        self.drain()

    def _run(self, job: GenerationJob) -> None:
        try:
            self.generate_chunk(job)
        finally:
            with self._lock:
                self._active -= 1
            self.drain()

    def _seed(self, job: GenerationJob) -> Optional[ContinuitySeed]:
        if self.seeder is None:
            return None
        try:
            return self.seeder.seed_for(job.x, job.y, job.prompt)
        except Exception as e:
            logger.warning("[Seed] Continuity seeding failed for %s: %s", job.key, e)
            return None

    def generate_chunk(self, job: GenerationJob) -> bool:
        """
        Run one generation end to end. Returns True when the chunk was
        completed; every failure is classified and persisted instead of raised.
        """
        x, y, prompt = job.x, job.y, job.prompt
        tag = f"({x},{y}) [{prompt_hash(prompt)}]"
        operation_id = None
        try:
            logger.info("[Gen] Starting generation for chunk %s prompt=%r", tag, prompt)

            seed = self._seed(job)
            operation_id = self.provider.start_generation(
                prompt,
                image_base64=seed.data_base64 if seed else None,
                image_extension=seed.extension if seed else "png",
            )
            logger.info("[Gen] Chunk %s operation: %s", tag, operation_id)
            if not self.store.claim(x, y, prompt, operation_id):
                logger.warning("[Gen] Chunk %s was reset before operation %s was recorded, dropping it", tag, operation_id)
                return False

            watch = OperationWatch(
                self.provider,
                operation_id,
                cancel=self._cancel,
                timeout=self.generation_timeout,
                clock=self._clock,
            )
            finished = watch.wait(self.poll_interval)

            world = extract_world_assets(finished)
            if not world.spz_url:
                raise MissingAssetError(operation_id)

            filename = self.assets.filename_for(x, y, prompt)
            self.assets.save(filename, self.provider.download(world.spz_url))

            saved = self.store.update(
                x,
                y,
                prompt,
                STATUS_COMPLETED,
                operation_id=operation_id,
                world_id=world.world_id,
                asset_path=self.assets.public_path(filename),
                panorama_url=world.panorama_url,
                owner=operation_id,
            )
            if not saved:
                current = self.store.get(x, y, prompt)
                if current is None or current.status != STATUS_COMPLETED:
                    self.assets.delete(filename)
                logger.warning("[Gen] Chunk %s was reset during generation, result discarded", tag)
                return False

            logger.info("[Gen] Chunk %s complete!", tag)
            return True

        except Exception as e:
            self._record_failure(job, tag, e, operation_id)
            return False

    def _record_failure(self, job: GenerationJob, tag: str, err: Exception, operation_id: Optional[str]) -> None:
        if isinstance(err, WorldLabsBillingError):
            status = STATUS_BILLING_ERROR
            self.halt(err.message or "HTTP 402 - Payment Required (out of API credits)")
        elif isinstance(err, WorldLabsQuotaError):
            status = STATUS_ERROR
            with self._lock:
                self._backoff_until = self._clock() + self.backoff_secs
            logger.warning("[Gen] 429 rate-limited! Backing off %ss. Queue paused.", self.backoff_secs)
        else:
            status = STATUS_ERROR

        logger.error("[Gen] Chunk %s failed: %s", tag, err)
        try:
            self.store.update(job.x, job.y, job.prompt, status, owner=operation_id)
        except Exception as db_err:
            logger.error("[Gen] Failed to update DB for error state of %s: %s", tag, db_err)

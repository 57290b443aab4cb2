"""
Pipeline Coordinator

Wires feed -> normalizer -> embedder -> memory store through bounded queues
and owns the retry and dead-letter policy.

Per-event states: Received -> Normalized -> Embedded -> Stored, with Dropped
and Failed (dead-lettered) as terminal off-ramps. Every terminal transition
releases the event's feed cursor, so the committed cursor never moves past an
event that is still in flight.

Tasks
-----
- feed       pulls raw records; blocks on the raw queue when it is full
- normalize  filters records and partitions events by author
- embed[i]   one per partition; batches by size or max wait, preserving the
             per-author arrival order
- store      batches upserts
- cursor     periodically persists the committed cursor
"""

from __future__ import annotations

import asyncio
import logging
import zlib
from typing import Any, List, Optional, Sequence

from ..core.errors import (
    AigisError,
    ExhaustedRetryError,
    MalformedInputError,
    StoreRejectedError,
)
from ..core.metrics import (
    DEAD_LETTERS,
    EMBED_BATCH_SECONDS,
    EVENTS_STORED,
    RECORDS_RECEIVED,
    PipelineStats,
)
from ..core.retry import RetryPolicy, call_with_retry
from ..embeddings.batcher import collect_batch
from ..embeddings.embedder import Embedder
from ..events.normalizer import EventNormalizer
from ..feed.cursor import CursorStore, CursorTracker
from ..store.base import MemoryStore
from ..store.models import EmbeddingRecord
from .dead_letter import DeadLetter, DeadLetterLog
from .queues import EmbedJob, StageQueue, StoreJob

logger = logging.getLogger("aigis.pipeline")


class PipelineCoordinator:
    def __init__(
        self,
        feed: Any,
        normalizer: EventNormalizer,
        embedder: Embedder,
        store: MemoryStore,
        dead_letters: DeadLetterLog,
        tracker: Optional[CursorTracker] = None,
        cursor_store: Optional[CursorStore] = None,
        *,
        raw_queue_size: int = 256,
        embed_queue_size: int = 256,
        store_queue_size: int = 256,
        embed_batch_size: int = 32,
        embed_max_wait: float = 0.5,
        embed_workers: int = 1,
        store_batch_size: int = 64,
        retry_policy: Optional[RetryPolicy] = None,
        excerpt_chars: int = 2000,
        cursor_flush_interval: float = 60.0,
        shutdown_grace: float = 10.0,
    ) -> None:
        """
        Parameters
        ----------
        feed : Any
            Object exposing `records()`, an async iterator of RawRecords.
        tracker : Optional[CursorTracker]
            In-flight cursor bookkeeping; share it with the feed client's
            `cursor_source` so reconnects resume from the committed cursor.
        cursor_store : Optional[CursorStore]
            Where the committed cursor is persisted. None disables persistence.
        """
        self.feed = feed
        self.normalizer = normalizer
        self.embedder = embedder
        self.store = store
        self.dead_letters = dead_letters
        self.tracker = tracker or CursorTracker()
        self.cursor_store = cursor_store

        self.embed_batch_size = embed_batch_size
        self.embed_max_wait = embed_max_wait
        self.store_batch_size = store_batch_size
        self.retry_policy = retry_policy or RetryPolicy()
        self.excerpt_chars = excerpt_chars
        self.cursor_flush_interval = cursor_flush_interval
        self.shutdown_grace = shutdown_grace

        self.stats = PipelineStats()
        self.raw_queue: StageQueue = StageQueue("raw", raw_queue_size, self.stats)
        self.embed_queues: List[StageQueue] = [
            StageQueue(f"embed_{i}" if embed_workers > 1 else "embed", embed_queue_size, self.stats)
            for i in range(embed_workers)
        ]
        self.store_queue: StageQueue = StageQueue("store", store_queue_size, self.stats)

        self._feed_task: Optional[asyncio.Task] = None
        self._workers: List[asyncio.Task] = []

    @classmethod
    def from_settings(
        cls,
        settings,
        feed: Any,
        normalizer: EventNormalizer,
        embedder: Embedder,
        store: MemoryStore,
        dead_letters: DeadLetterLog,
        tracker: Optional[CursorTracker] = None,
        cursor_store: Optional[CursorStore] = None,
    ) -> "PipelineCoordinator":
        return cls(
            feed,
            normalizer,
            embedder,
            store,
            dead_letters,
            tracker,
            cursor_store,
            raw_queue_size=settings.raw_queue_size,
            embed_queue_size=settings.embed_queue_size,
            store_queue_size=settings.store_queue_size,
            embed_batch_size=settings.embed_batch_size,
            embed_max_wait=settings.embed_max_wait,
            embed_workers=settings.embed_workers,
            store_batch_size=settings.store_batch_size,
            retry_policy=RetryPolicy.from_settings(settings),
            excerpt_chars=settings.excerpt_chars,
            cursor_flush_interval=settings.cursor_flush_interval,
            shutdown_grace=settings.shutdown_grace,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return bool(self._workers) and not all(t.done() for t in self._workers)

    def start(self) -> None:
        if self._workers:
            raise RuntimeError("pipeline already started")

        self._workers.append(self._spawn(self._normalize_loop(), "normalize"))
        for index, queue in enumerate(self.embed_queues):
            self._workers.append(self._spawn(self._embed_loop(queue), f"embed-{index}"))
        self._workers.append(self._spawn(self._store_loop(), "store"))
        if self.cursor_store is not None:
            self._workers.append(self._spawn(self._cursor_loop(), "cursor"))

        self._feed_task = self._spawn(self._feed_loop(), "feed")
        logger.info("Pipeline started with %d embed worker(s)", len(self.embed_queues))

    async def drain(self) -> None:
        """Wait until the feed is exhausted and every queued event is terminal."""
        if self._feed_task is not None:
            await asyncio.shield(self._feed_task)
        await self._join_queues()

    async def stop(self) -> None:
        """
        Stop consuming, give queued events `shutdown_grace` seconds to finish,
        then cancel the workers and persist the committed cursor. Events still
        in flight are redelivered on the next run.
        """
        if self._feed_task is not None and not self._feed_task.done():
            self._feed_task.cancel()
            await asyncio.gather(self._feed_task, return_exceptions=True)

        try:
            await asyncio.wait_for(self._join_queues(), timeout=self.shutdown_grace)
        except asyncio.TimeoutError:
            logger.warning(
                "Shutdown grace expired with %d event(s) in flight; they will be redelivered",
                self.tracker.in_flight,
            )

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

        self.flush_cursor()
        logger.info("Pipeline stopped: %s", self.stats.snapshot())

    def flush_cursor(self) -> Optional[int]:
        cursor = self.tracker.committed
        if self.cursor_store is not None and cursor is not None:
            self.cursor_store.save(cursor)
        return cursor

    def queue_depths(self) -> dict:
        depths = {"raw": self.raw_queue.qsize(), "store": self.store_queue.qsize()}
        for queue in self.embed_queues:
            depths[queue.name] = queue.qsize()
        return depths

    # ------------------------------------------------------------------
    # Stage loops
    # ------------------------------------------------------------------

    async def _feed_loop(self) -> None:
        async for raw in self.feed.records():
            self.stats.received += 1
            RECORDS_RECEIVED.inc()
            self.tracker.begin(raw.cursor)
            await self.raw_queue.put(raw)
        logger.info("Feed exhausted")

    async def _normalize_loop(self) -> None:
        while True:
            raw = await self.raw_queue.get()
            try:
                await self._normalize_one(raw)
            finally:
                self.raw_queue.task_done()

    async def _normalize_one(self, raw) -> None:
        try:
            event, reason = self.normalizer.classify(raw)
        except MalformedInputError as exc:
            logger.warning("Dropping malformed record: %s", exc)
            self.stats.drop("malformed")
            self.tracker.finish(raw.cursor)
            return
        except Exception:
            logger.exception("Dropping record the normalizer could not handle (cursor %s)", raw.cursor)
            self.stats.drop("malformed")
            self.tracker.finish(raw.cursor)
            return

        if event is None:
            logger.debug("Dropping record (%s)", reason)
            self.stats.drop(reason or "filtered")
            self.tracker.finish(raw.cursor)
            return

        self.stats.normalized += 1
        queue = self.embed_queues[self._partition(event.author_id)]
        await queue.put(EmbedJob(event=event, cursor=raw.cursor))

    def _partition(self, author_id: str) -> int:
        if len(self.embed_queues) == 1:
            return 0
        return zlib.crc32(author_id.encode("utf-8")) % len(self.embed_queues)

    async def _embed_loop(self, queue: StageQueue) -> None:
        while True:
            batch = await collect_batch(queue, self.embed_batch_size, self.embed_max_wait)
            try:
                await self._embed_batch(batch)
            finally:
                for _ in batch:
                    queue.task_done()

    async def _embed_batch(self, jobs: Sequence[EmbedJob]) -> None:
        texts = [job.event.embedding_text for job in jobs]

        async def embed_once():
            with EMBED_BATCH_SECONDS.time():
                return await self.embedder.embed(texts, batch_size=len(texts))

        try:
            vectors = await call_with_retry("embed", self.retry_policy, embed_once)
        except ExhaustedRetryError as exc:
            await self._isolate_embed_failures(jobs, exc)
            return
        except Exception as exc:
            logger.exception("Unexpected embedding failure for batch of %d", len(jobs))
            for job in jobs:
                self._dead_letter("embed", job.event, job.cursor, exc, attempts=1)
            return

        for job, vector in zip(jobs, vectors):
            await self._enqueue_store(job, vector)

    async def _isolate_embed_failures(
        self,
        jobs: Sequence[EmbedJob],
        exc: ExhaustedRetryError,
    ) -> None:
        """
        After a batch exhausts its retries, give each event one solo attempt so
        a single poisoned text does not take its batch-mates down with it.
        """
        if len(jobs) == 1:
            job = jobs[0]
            self._dead_letter("embed", job.event, job.cursor, exc.last_error or exc, exc.attempts)
            return

        logger.warning("Embedding batch of %d failed; isolating events", len(jobs))
        for job in jobs:
            try:
                vectors = await self.embedder.embed([job.event.embedding_text], batch_size=1)
            except AigisError as solo_exc:
                self._dead_letter("embed", job.event, job.cursor, solo_exc, exc.attempts + 1)
                continue
            await self._enqueue_store(job, vectors[0])

    async def _enqueue_store(self, job: EmbedJob, vector: List[float]) -> None:
        record = EmbeddingRecord.from_event(job.event, vector, self.excerpt_chars)
        self.stats.embedded += 1
        await self.store_queue.put(StoreJob(event=job.event, record=record, cursor=job.cursor))

    async def _store_loop(self) -> None:
        while True:
            batch = await collect_batch(self.store_queue, self.store_batch_size, self.embed_max_wait)
            try:
                await self._store_batch(batch)
            finally:
                for _ in batch:
                    self.store_queue.task_done()

    async def _store_batch(self, jobs: Sequence[StoreJob]) -> None:
        records = [job.record for job in jobs]
        try:
            await call_with_retry(
                "store",
                self.retry_policy,
                lambda: self.store.upsert_many(records),
            )
        except ExhaustedRetryError as exc:
            await self._isolate_store_failures(jobs, exc)
            return
        except StoreRejectedError as exc:
            await self._isolate_store_failures(jobs, ExhaustedRetryError("store", 1, exc))
            return
        except Exception as exc:
            logger.exception("Unexpected store failure for batch of %d", len(jobs))
            for job in jobs:
                self._dead_letter("store", job.event, job.cursor, exc, attempts=1)
            return

        for job in jobs:
            self._stored(job)

    async def _isolate_store_failures(
        self,
        jobs: Sequence[StoreJob],
        exc: ExhaustedRetryError,
    ) -> None:
        if len(jobs) == 1:
            job = jobs[0]
            self._dead_letter("store", job.event, job.cursor, exc.last_error or exc, exc.attempts)
            return

        logger.warning("Store batch of %d failed; isolating events", len(jobs))
        for job in jobs:
            try:
                await self.store.upsert(job.record)
            except (AigisError, ValueError) as solo_exc:
                self._dead_letter("store", job.event, job.cursor, solo_exc, exc.attempts + 1)
                continue
            self._stored(job)

    def _stored(self, job: StoreJob) -> None:
        self.stats.stored += 1
        EVENTS_STORED.inc()
        self.tracker.finish(job.cursor)

    async def _cursor_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cursor_flush_interval)
            try:
                self.flush_cursor()
            except OSError:
                logger.exception("Failed to persist feed cursor")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _dead_letter(
        self,
        stage: str,
        event,
        cursor: Optional[int],
        error: BaseException,
        attempts: int,
    ) -> None:
        entry = DeadLetter(
            stage=stage,
            error=f"{type(error).__name__}: {error}",
            attempts=max(1, attempts),
            cursor=cursor,
            event=event,
        )
        try:
            self.dead_letters.append(entry)
        except OSError:
            logger.exception("Could not write dead letter for %s", event.event_id)
        self.stats.dead_lettered += 1
        DEAD_LETTERS.labels(stage=stage).inc()
        self.tracker.finish(cursor)

    async def _join_queues(self) -> None:
        await self.raw_queue.join()
        for queue in self.embed_queues:
            await queue.join()
        await self.store_queue.join()

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"aigis-{name}")
        task.add_done_callback(self._report_task_exit)
        return task

    @staticmethod
    def _report_task_exit(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Pipeline task %s crashed",
                task.get_name(),
                exc_info=(type(exc), exc, exc.__traceback__),
            )

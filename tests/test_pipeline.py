"""
Pipeline Coordinator Tests

End-to-end runs over a finite fake feed, the in-memory store and a
deterministic fake embedder: idempotence under redelivery, drop accounting,
dead-lettering, cursor safety and backpressure.
"""

import asyncio

import pytest
from prometheus_client import REGISTRY

from aigis_memory.core.errors import StoreError, StoreRejectedError
from aigis_memory.events.normalizer import EventNormalizer
from aigis_memory.feed.cursor import CursorStore, CursorTracker
from aigis_memory.pipeline.coordinator import PipelineCoordinator
from aigis_memory.pipeline.dead_letter import DeadLetter, DeadLetterLog
from aigis_memory.store import InMemoryMemoryStore, record_id_for

from conftest import BASE_TIME_US, BOT_DID, DIMENSION, FakeEmbedder, FakeFeed, make_post


def build(records, fast_retry, embedder=None, store=None, **options):
    options.setdefault("embed_max_wait", 0.01)
    return PipelineCoordinator(
        FakeFeed(records),
        EventNormalizer(self_id=BOT_DID),
        embedder or FakeEmbedder(),
        store or InMemoryMemoryStore(DIMENSION),
        DeadLetterLog(),
        retry_policy=fast_retry,
        **options,
    )


async def run_to_completion(coordinator):
    coordinator.start()
    try:
        await asyncio.wait_for(coordinator.drain(), timeout=5)
    finally:
        await coordinator.stop()


class TestIngestion:

    @pytest.mark.asyncio
    async def test_events_are_stored(self, fast_retry):
        records = [make_post(f"message {i}", rkey=f"r{i}", time_us=BASE_TIME_US + i) for i in range(10)]
        coordinator = build(records, fast_retry)

        await run_to_completion(coordinator)

        assert await coordinator.store.count() == 10
        assert coordinator.stats.received == 10
        assert coordinator.stats.stored == 10
        stored = await coordinator.store.get(record_id_for("at://did:plc:alice/app.bsky.feed.post/r3"))
        assert stored.payload.text == "message 3"

    @pytest.mark.asyncio
    async def test_redelivery_is_idempotent(self, fast_retry):
        records = [
            make_post("hello", rkey="r1", time_us=BASE_TIME_US),
            make_post("hello", rkey="r1", time_us=BASE_TIME_US),
        ]
        coordinator = build(records, fast_retry)

        await run_to_completion(coordinator)

        assert await coordinator.store.count() == 1

    @pytest.mark.asyncio
    async def test_same_text_different_events_are_both_kept(self, fast_retry):
        records = [
            make_post("hello", rkey="r1", time_us=BASE_TIME_US),
            make_post("hello", rkey="r2", time_us=BASE_TIME_US + 1),
        ]
        coordinator = build(records, fast_retry)

        await run_to_completion(coordinator)

        assert await coordinator.store.count() == 2

    @pytest.mark.asyncio
    async def test_filtered_records_are_dropped_and_counted(self, fast_retry):
        records = [
            make_post("", rkey="empty", time_us=BASE_TIME_US),
            make_post("me", did=BOT_DID, rkey="self", time_us=BASE_TIME_US + 1),
            make_post("kept", rkey="kept", time_us=BASE_TIME_US + 2),
        ]
        broken = make_post("broken", rkey="broken", time_us=BASE_TIME_US + 3)
        del broken.data["commit"]["record"]
        records.append(broken)
        embedder = FakeEmbedder()
        coordinator = build(records, fast_retry, embedder=embedder)

        await run_to_completion(coordinator)

        assert await coordinator.store.count() == 1
        assert coordinator.stats.dropped == {"empty": 1, "self": 1, "malformed": 1}
        assert all("" not in call for call in embedder.calls)
        assert coordinator.tracker.in_flight == 0

    @pytest.mark.asyncio
    async def test_transient_embed_failure_is_retried(self, fast_retry):
        embedder = FakeEmbedder(fail_calls=1)
        coordinator = build([make_post("hi", rkey="r1")], fast_retry, embedder=embedder)

        await run_to_completion(coordinator)

        assert await coordinator.store.count() == 1
        assert coordinator.dead_letters.count == 0

    @pytest.mark.asyncio
    async def test_embed_latency_is_recorded_per_backend_call(self, fast_retry):
        before = REGISTRY.get_sample_value("aigis_embed_batch_seconds_count") or 0
        embedder = FakeEmbedder(fail_calls=1)
        coordinator = build([make_post("hi", rkey="r1")], fast_retry, embedder=embedder)

        await run_to_completion(coordinator)

        assert len(embedder.calls) == 2
        assert REGISTRY.get_sample_value("aigis_embed_batch_seconds_count") == before + 2

    @pytest.mark.asyncio
    async def test_per_author_order_is_preserved_across_partitions(self, fast_retry):
        records = []
        for i in range(6):
            for author in ("did:plc:alice", "did:plc:bob", "did:plc:carol"):
                records.append(
                    make_post(f"{author} {i}", did=author, rkey=f"r{i}", time_us=BASE_TIME_US + len(records))
                )
        embedder = FakeEmbedder()
        coordinator = build(records, fast_retry, embedder=embedder, embed_workers=3, embed_batch_size=4)

        await run_to_completion(coordinator)

        embedded = [text for call in embedder.calls for text in call]
        for author in ("did:plc:alice", "did:plc:bob", "did:plc:carol"):
            mine = [t for t in embedded if t.startswith(author)]
            assert mine == [f"{author} {i}" for i in range(6)]
        assert await coordinator.store.count() == 18


def _collection_not_string():
    record = make_post("bad", rkey="bad", time_us=BASE_TIME_US)
    record.data["commit"]["collection"] = ["app.bsky.feed.post"]
    return record


def _unusable_cursor():
    return make_post("bad", rkey="bad", time_us=10**20, created_at="not a date")


MALFORMED_SHAPES = [
    pytest.param(_collection_not_string, id="collection-list"),
    pytest.param(
        lambda: make_post("bad", rkey="bad", time_us=BASE_TIME_US, facets=[{"features": 5}]),
        id="features-int",
    ),
    pytest.param(
        lambda: make_post(
            "bad",
            rkey="bad",
            time_us=BASE_TIME_US,
            facets=[{"index": [1, 2], "features": [{"$type": "app.bsky.richtext.facet#link"}]}],
        ),
        id="index-list",
    ),
    pytest.param(lambda: make_post("bad", rkey="bad", time_us=BASE_TIME_US, langs=5), id="langs-int"),
    pytest.param(
        lambda: make_post("bad", rkey="bad", time_us=BASE_TIME_US, embed={"$type": ["x"]}),
        id="embed-type-list",
    ),
    pytest.param(_unusable_cursor, id="cursor-overflow"),
]


class TestMalformedRecords:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_record", MALFORMED_SHAPES)
    async def test_bad_shape_is_dropped_and_next_post_stored(self, fast_retry, bad_record):
        records = [bad_record(), make_post("fine", rkey="good", time_us=BASE_TIME_US + 1)]
        coordinator = build(records, fast_retry)

        await run_to_completion(coordinator)

        assert coordinator.stats.stored == 1
        assert coordinator.stats.dropped == {"malformed": 1}
        assert coordinator.tracker.in_flight == 0

    @pytest.mark.asyncio
    async def test_unexpected_normalizer_error_does_not_stop_the_pipeline(self, fast_retry):
        class ExplodingNormalizer(EventNormalizer):
            def classify(self, raw):
                if raw.data["commit"]["rkey"] == "boom":
                    raise TypeError("unexpected shape")
                return super().classify(raw)

        records = [
            make_post("boom", rkey="boom", time_us=BASE_TIME_US),
            make_post("fine", rkey="good", time_us=BASE_TIME_US + 1),
        ]
        coordinator = build(records, fast_retry)
        coordinator.normalizer = ExplodingNormalizer(self_id=BOT_DID)

        await run_to_completion(coordinator)

        assert await coordinator.store.count() == 1
        assert coordinator.stats.dropped == {"malformed": 1}
        assert coordinator.tracker.in_flight == 0


class TestDeadLetters:

    @pytest.mark.asyncio
    async def test_poisoned_event_is_dead_lettered_once_and_pipeline_continues(self, fast_retry):
        records = [
            make_post("before", rkey="r1", time_us=BASE_TIME_US),
            make_post("poison", rkey="r2", time_us=BASE_TIME_US + 1),
            make_post("after", rkey="r3", time_us=BASE_TIME_US + 2),
        ]
        embedder = FakeEmbedder(poison=["poison"])
        coordinator = build(records, fast_retry, embedder=embedder, embed_batch_size=8)

        await run_to_completion(coordinator)

        entries = list(coordinator.dead_letters.entries())
        assert len(entries) == 1
        assert entries[0].stage == "embed"
        assert entries[0].event.text == "poison"
        assert entries[0].cursor == BASE_TIME_US + 1
        assert entries[0].attempts >= fast_retry.attempts

        assert await coordinator.store.count() == 2
        assert coordinator.stats.dead_lettered == 1
        assert coordinator.tracker.in_flight == 0

    @pytest.mark.asyncio
    async def test_store_failure_is_dead_lettered(self, fast_retry):
        class BrokenStore(InMemoryMemoryStore):
            async def upsert_many(self, records):
                raise StoreError("disk full")

        coordinator = build([make_post("hi", rkey="r1")], fast_retry, store=BrokenStore(DIMENSION))

        await run_to_completion(coordinator)

        entries = list(coordinator.dead_letters.entries())
        assert [e.stage for e in entries] == ["store"]
        assert entries[0].attempts == fast_retry.attempts
        assert "disk full" in entries[0].error

    def test_dead_letter_log_file_round_trip(self, tmp_path):
        event = EventNormalizer(self_id=BOT_DID).normalize(make_post("lost", rkey="r9"))
        path = tmp_path / "dl" / "dead_letters.jsonl"
        log = DeadLetterLog(str(path))
        log.append(DeadLetter(stage="embed", error="EmbeddingError: down", attempts=5, cursor=7, event=event))
        with path.open("a", encoding="utf-8") as f:
            f.write("{broken\n")

        entries = list(DeadLetterLog(str(path)).entries())
        assert len(entries) == 1
        assert entries[0].event == event
        assert entries[0].cursor == 7

    @pytest.mark.asyncio
    async def test_rejected_batch_is_isolated_without_retrying(self, fast_retry):
        class PickyStore(InMemoryMemoryStore):
            def __init__(self, dimension):
                super().__init__(dimension)
                self.batches = []

            async def upsert_many(self, records):
                self.batches.append([r.payload.text for r in records])
                if any(r.payload.text == "bad" for r in records):
                    raise StoreRejectedError("invalid byte sequence")
                return await super().upsert_many(records)

        records = [
            make_post("one", rkey="r1", time_us=BASE_TIME_US),
            make_post("bad", rkey="r2", time_us=BASE_TIME_US + 1),
            make_post("three", rkey="r3", time_us=BASE_TIME_US + 2),
        ]
        store = PickyStore(DIMENSION)
        coordinator = build(records, fast_retry, store=store, store_batch_size=8, embed_batch_size=8)

        await run_to_completion(coordinator)

        entries = list(coordinator.dead_letters.entries())
        assert [e.event.text for e in entries] == ["bad"]
        assert entries[0].stage == "store"
        assert "invalid byte sequence" in entries[0].error
        assert await store.count() == 2
        bad_calls = [batch for batch in store.batches if "bad" in batch]
        assert len(bad_calls) <= 2
        assert store.batches.count(["bad"]) == 1

    def test_rewrite_replaces_log_contents(self, tmp_path):
        normalizer = EventNormalizer(self_id=BOT_DID)
        path = tmp_path / "dead_letters.jsonl"
        log = DeadLetterLog(str(path))
        for rkey in ("r1", "r2", "r3"):
            event = normalizer.normalize(make_post(rkey, rkey=rkey))
            log.append(DeadLetter(stage="embed", error="EmbeddingError: down", attempts=1, event=event))

        kept = [e for e in log.entries() if e.event.text == "r2"]
        assert log.rewrite(kept) == 1

        assert [e.event.text for e in DeadLetterLog(str(path)).entries()] == ["r2"]
        assert not path.with_suffix(".jsonl.tmp").exists()

        assert log.rewrite([]) == 0
        assert path.read_text(encoding="utf-8") == ""


class TestCursor:

    @pytest.mark.asyncio
    async def test_committed_cursor_passes_all_terminal_events(self, fast_retry, tmp_path):
        records = [make_post(f"m{i}", rkey=f"r{i}", time_us=BASE_TIME_US + i) for i in range(5)]
        records.append(make_post("", rkey="dropped", time_us=BASE_TIME_US + 5))
        cursor_store = CursorStore(str(tmp_path / "cursor.json"))
        coordinator = build(records, fast_retry, tracker=CursorTracker(), cursor_store=cursor_store)

        await run_to_completion(coordinator)

        assert coordinator.tracker.committed == BASE_TIME_US + 6
        assert cursor_store.load() == BASE_TIME_US + 6

    @pytest.mark.asyncio
    async def test_cursor_holds_at_unfinished_event(self, fast_retry):
        release = asyncio.Event()

        class SlowStore(InMemoryMemoryStore):
            async def upsert_many(self, records):
                await release.wait()
                return await super().upsert_many(records)

        records = [make_post(f"m{i}", rkey=f"r{i}", time_us=BASE_TIME_US + i) for i in range(3)]
        coordinator = build(records, fast_retry, store=SlowStore(DIMENSION))
        coordinator.start()
        try:
            await asyncio.sleep(0.1)
            assert coordinator.tracker.committed == BASE_TIME_US
            release.set()
            await asyncio.wait_for(coordinator.drain(), timeout=5)
            assert coordinator.tracker.committed == BASE_TIME_US + 3
        finally:
            release.set()
            await coordinator.stop()


class TestBackpressure:

    @pytest.mark.asyncio
    async def test_blocked_store_bounds_every_queue(self, fast_retry):
        release = asyncio.Event()

        class BlockedStore(InMemoryMemoryStore):
            async def upsert_many(self, records):
                await release.wait()
                return await super().upsert_many(records)

        records = [make_post(f"m{i}", rkey=f"r{i}", time_us=BASE_TIME_US + i) for i in range(50)]
        coordinator = build(
            records,
            fast_retry,
            store=BlockedStore(DIMENSION),
            raw_queue_size=2,
            embed_queue_size=2,
            store_queue_size=2,
            embed_batch_size=1,
            store_batch_size=1,
        )
        coordinator.start()
        try:
            await asyncio.sleep(0.2)

            assert coordinator.stats.received < 50
            assert all(depth <= 2 for depth in coordinator.stats.max_queue_depth.values())
            assert coordinator.stats.stored == 0

            release.set()
            await asyncio.wait_for(coordinator.drain(), timeout=5)
        finally:
            release.set()
            await coordinator.stop()

        assert coordinator.stats.stored == 50
        assert await coordinator.store.count() == 50

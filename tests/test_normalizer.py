"""
Event Normalizer Tests

Covers record-to-event conversion, filtering reasons, markup stripping and
the context fields derived from replies and embeds.
"""

from datetime import datetime, timezone

import pytest

from aigis_memory.core.errors import MalformedInputError
from aigis_memory.events.normalizer import EventNormalizer, strip_markup
from aigis_memory.feed.models import RawRecord

from conftest import BASE_TIME_US, BOT_DID, make_post


@pytest.fixture
def normalizer():
    return EventNormalizer(self_id=BOT_DID)


class TestNormalize:

    def test_post_becomes_event(self, normalizer):
        event = normalizer.normalize(make_post("hello there", rkey="3kxyz"))

        assert event is not None
        assert event.event_id == "at://did:plc:alice/app.bsky.feed.post/3kxyz"
        assert event.author_id == "did:plc:alice"
        assert event.text == "hello there"
        assert event.occurred_at == datetime(2024, 8, 30, 6, 40, tzinfo=timezone.utc)
        assert event.conversation_id == event.event_id
        assert event.context_refs == ()
        assert event.source_cid == "bafyreicid"

    def test_redelivery_yields_same_event_id(self, normalizer):
        first = normalizer.normalize(make_post("hi", rkey="r1", time_us=1))
        second = normalizer.normalize(make_post("hi", rkey="r1", time_us=2))
        assert first.event_id == second.event_id

    def test_same_text_different_records_are_distinct(self, normalizer):
        a = normalizer.normalize(make_post("hello", rkey="r1"))
        b = normalizer.normalize(make_post("hello", rkey="r2"))
        assert a.event_id != b.event_id

    def test_missing_created_at_falls_back_to_cursor(self, normalizer):
        event = normalizer.normalize(make_post(created_at=None))
        assert event.occurred_at == datetime.fromtimestamp(BASE_TIME_US / 1_000_000, tz=timezone.utc)

    def test_nanosecond_timestamp_is_truncated(self, normalizer):
        event = normalizer.normalize(make_post(created_at="2024-08-30T06:40:00.123456789Z"))
        assert event.occurred_at.microsecond == 123456

    def test_reply_sets_conversation_and_refs(self, normalizer):
        reply = {
            "root": {"uri": "at://did:plc:bob/app.bsky.feed.post/root", "cid": "x"},
            "parent": {"uri": "at://did:plc:bob/app.bsky.feed.post/parent", "cid": "y"},
        }
        event = normalizer.normalize(make_post("agreed", reply=reply))

        assert event.conversation_id == "at://did:plc:bob/app.bsky.feed.post/root"
        assert event.context_refs == (
            "at://did:plc:bob/app.bsky.feed.post/parent",
            "at://did:plc:bob/app.bsky.feed.post/root",
        )
        assert "reply" in event.tags

    def test_quote_embed_adds_ref_and_tag(self, normalizer):
        embed = {
            "$type": "app.bsky.embed.record",
            "record": {"uri": "at://did:plc:carol/app.bsky.feed.post/q", "cid": "z"},
        }
        event = normalizer.normalize(make_post("look at this", embed=embed))
        assert event.context_refs == ("at://did:plc:carol/app.bsky.feed.post/q",)
        assert event.tags == ("quote",)

    def test_external_embed_extends_embedding_text(self, normalizer):
        embed = {
            "$type": "app.bsky.embed.external",
            "external": {
                "uri": "https://example.com/a",
                "title": "Rust 2024",
                "description": "What changed",
            },
        }
        event = normalizer.normalize(make_post("worth a read", embed=embed))
        assert event.text == "worth a read"
        assert event.embedding_text == "worth a read Rust 2024 What changed"
        assert event.tags == ("external",)


class TestFiltering:

    def test_own_posts_are_dropped(self, normalizer):
        event, reason = normalizer.classify(make_post(did=BOT_DID))
        assert event is None
        assert reason == "self"

    def test_non_commit_is_unsupported(self, normalizer):
        raw = RawRecord(data={"did": "did:plc:alice", "kind": "identity", "time_us": 1}, cursor=1)
        assert normalizer.classify(raw) == (None, "unsupported")

    def test_delete_is_unsupported(self, normalizer):
        raw = make_post()
        raw.data["commit"]["operation"] = "delete"
        assert normalizer.classify(raw) == (None, "unsupported")

    def test_other_collection_is_unsupported(self, normalizer):
        raw = make_post()
        raw.data["commit"]["collection"] = "app.bsky.feed.like"
        assert normalizer.classify(raw) == (None, "unsupported")

    def test_empty_text_is_dropped(self, normalizer):
        assert normalizer.classify(make_post("   ")) == (None, "empty")

    def test_link_only_text_is_dropped(self, normalizer):
        assert normalizer.classify(make_post("https://example.com/x")) == (None, "empty")

    def test_allowlist(self):
        normalizer = EventNormalizer(self_id=BOT_DID, allowed_authors=["did:plc:bob"])
        assert normalizer.classify(make_post(did="did:plc:alice")) == (None, "not_allowlisted")
        event, _ = normalizer.classify(make_post(did="did:plc:bob"))
        assert event is not None

    def test_language_filter_uses_prefix(self):
        normalizer = EventNormalizer(self_id=BOT_DID, allowed_langs=["en"])
        assert normalizer.normalize(make_post(langs=["en-US"])) is not None
        assert normalizer.classify(make_post(langs=["ja"])) == (None, "language")
        # untagged posts pass
        assert normalizer.normalize(make_post()) is not None


class TestMalformed:

    def test_commit_without_record(self, normalizer):
        raw = make_post()
        del raw.data["commit"]["record"]
        with pytest.raises(MalformedInputError):
            normalizer.classify(raw)

    def test_commit_without_did(self, normalizer):
        raw = make_post()
        del raw.data["did"]
        with pytest.raises(MalformedInputError):
            normalizer.classify(raw)

    def test_non_string_text(self, normalizer):
        with pytest.raises(MalformedInputError):
            normalizer.classify(make_post(text=42))

    def test_no_timestamp_at_all(self, normalizer):
        with pytest.raises(MalformedInputError):
            normalizer.classify(make_post(created_at=None, time_us=None))

    def test_collection_not_a_string(self, normalizer):
        raw = make_post()
        raw.data["commit"]["collection"] = ["app.bsky.feed.post"]
        with pytest.raises(MalformedInputError, match="collection"):
            normalizer.classify(raw)

    @pytest.mark.parametrize(
        "fields",
        [
            {"langs": 5},
            {"facets": {"features": []}},
            {"facets": [{"features": 5}]},
            {"facets": [{"index": [1, 2], "features": [{"$type": "app.bsky.richtext.facet#link"}]}]},
            {"embed": {"$type": ["app.bsky.embed.images"]}},
        ],
    )
    def test_wrongly_shaped_record_fields(self, normalizer, fields):
        with pytest.raises(MalformedInputError):
            normalizer.classify(make_post("hello", **fields))

    def test_cursor_outside_datetime_range(self, normalizer):
        raw = make_post(created_at="yesterday-ish", time_us=10**20)
        with pytest.raises(MalformedInputError, match="timestamp"):
            normalizer.classify(raw)


class TestStripMarkup:

    def test_removes_link_facet_by_byte_range(self):
        text = "café see example.com ok"
        start = len("café see ".encode("utf-8"))
        end = start + len("example.com")
        facets = [{
            "index": {"byteStart": start, "byteEnd": end},
            "features": [{"$type": "app.bsky.richtext.facet#link", "uri": "https://example.com"}],
        }]
        assert strip_markup(text, facets) == "café see ok"

    def test_ignores_mention_facets_and_bad_ranges(self):
        facets = [
            {"index": {"byteStart": 0, "byteEnd": 4}, "features": [{"$type": "app.bsky.richtext.facet#mention"}]},
            {"index": {"byteStart": 5, "byteEnd": 999}, "features": [{"$type": "app.bsky.richtext.facet#link"}]},
        ]
        assert strip_markup("@bob hi", facets) == "@bob hi"

    def test_collapses_whitespace_and_bare_urls(self):
        assert strip_markup("  a\n\nhttp://x.y/z   b ") == "a b"

    def test_drops_nul_characters(self):
        assert strip_markup("hel\x00lo\x00 world") == "hello world"

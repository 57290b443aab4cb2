"""
Event Normalizer

Converts raw Jetstream records into ChatEvents. Normalization is a pure,
non-blocking function of the record and the normalizer's static
configuration: no network, no storage, no clock.

Filtering
---------
A record yields no event when it is
- not a `create` commit of a wanted collection       (reason "unsupported")
- authored by the bot itself                         (reason "self")
- from an author outside a configured allowlist      (reason "not_allowlisted")
- tagged only with languages outside a configured set (reason "language")
- empty once link markup is stripped                 (reason "empty")

Records that cannot be decoded raise MalformedInputError.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.errors import MalformedInputError
from ..feed.models import RawRecord
from .models import ChatEvent

logger = logging.getLogger("aigis.normalizer")

POST_COLLECTION = "app.bsky.feed.post"
LINK_FEATURE = "app.bsky.richtext.facet#link"

URL_PATTERN = re.compile(r"https?://\S+", re.IGNORECASE)
WHITESPACE_PATTERN = re.compile(r"\s+")

EMBED_TAGS = {
    "app.bsky.embed.images": ("images",),
    "app.bsky.embed.video": ("video",),
    "app.bsky.embed.external": ("external",),
    "app.bsky.embed.record": ("quote",),
    "app.bsky.embed.recordWithMedia": ("quote", "media"),
}


class EventNormalizer:
    """
    Stateless record-to-event converter.

    Parameters
    ----------
    self_id : str
        Author id the bot posts as. Its own records are always dropped.
    wanted_collections : Sequence[str]
        Record collections treated as message creation.
    allowed_authors : Sequence[str]
        Optional author allowlist. Empty means everyone.
    allowed_langs : Sequence[str]
        Optional language allowlist (prefix match, "en" admits "en-US").
    """

    def __init__(
        self,
        self_id: str,
        wanted_collections: Sequence[str] = (POST_COLLECTION,),
        allowed_authors: Sequence[str] = (),
        allowed_langs: Sequence[str] = (),
    ) -> None:
        self.self_id = self_id
        self.wanted_collections = frozenset(wanted_collections)
        self.allowed_authors = frozenset(allowed_authors)
        self.allowed_langs = tuple(lang.lower() for lang in allowed_langs)

    @classmethod
    def from_settings(cls, settings) -> "EventNormalizer":
        return cls(
            self_id=settings.bot_did,
            wanted_collections=settings.wanted_collection_list,
            allowed_authors=settings.allowed_user_list,
            allowed_langs=settings.allowed_lang_list,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def normalize(self, raw: RawRecord) -> Optional[ChatEvent]:
        """Return the ChatEvent for `raw`, or None when it is filtered out."""
        event, _ = self.classify(raw)
        return event

    def classify(self, raw: RawRecord) -> Tuple[Optional[ChatEvent], Optional[str]]:
        """
        Normalize `raw` and explain a drop.

        Returns
        -------
        (event, None) for an accepted record, (None, reason) for a filtered one.

        Raises
        ------
        MalformedInputError
            If the record lacks the fields needed to build an event.
        """
        data = raw.data
        if not isinstance(data, dict):
            raise MalformedInputError("record is not a JSON object")

        if data.get("kind") != "commit":
            return None, "unsupported"

        author = data.get("did")
        commit = data.get("commit")
        if not isinstance(author, str) or not author:
            raise MalformedInputError("commit without author did")
        if not isinstance(commit, dict):
            raise MalformedInputError("commit payload missing")

        collection = commit.get("collection")
        if not isinstance(collection, str):
            raise MalformedInputError("commit collection is not a string")
        if commit.get("operation") != "create" or collection not in self.wanted_collections:
            return None, "unsupported"

        if author == self.self_id:
            return None, "self"

        if self.allowed_authors and author not in self.allowed_authors:
            return None, "not_allowlisted"

        rkey = commit.get("rkey")
        record = commit.get("record")
        if not isinstance(rkey, str) or not rkey:
            raise MalformedInputError("create commit without rkey")
        if not isinstance(record, dict):
            raise MalformedInputError("create commit without record")

        raw_text = record.get("text", "")
        if not isinstance(raw_text, str):
            raise MalformedInputError("record text is not a string")

        raw_langs = record.get("langs") or []
        if not isinstance(raw_langs, list):
            raise MalformedInputError("record langs is not a list")
        langs = tuple(l for l in raw_langs if isinstance(l, str))
        if self.allowed_langs and langs and not self._lang_allowed(langs):
            return None, "language"

        text = strip_markup(raw_text, record.get("facets"))
        if not text:
            return None, "empty"

        event_id = f"at://{author}/{collection}/{rkey}"
        occurred_at = _parse_timestamp(record.get("createdAt"), raw.cursor)
        refs = _context_refs(record)
        reply_root = _ref_uri(record.get("reply"), "root")

        event = ChatEvent(
            event_id=event_id,
            author_id=author,
            text=text,
            occurred_at=occurred_at,
            context_refs=refs,
            conversation_id=reply_root or event_id,
            embedding_text=_embedding_text(text, record.get("embed")),
            tags=_tags(record),
            langs=langs,
            source_cid=commit.get("cid") if isinstance(commit.get("cid"), str) else None,
        )
        return event, None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _lang_allowed(self, langs: Iterable[str]) -> bool:
        for lang in langs:
            lowered = lang.lower()
            for allowed in self.allowed_langs:
                if lowered == allowed or lowered.startswith(allowed + "-"):
                    return True
        return False


def strip_markup(text: str, facets: Any = None) -> str:
    """
    Remove link facets and bare URLs, then collapse whitespace.

    Facet indices are UTF-8 byte offsets; ranges that are out of bounds or not
    integers are ignored. NUL characters are dropped.

    Raises
    ------
    MalformedInputError
        If `facets`, a facet's `features` or its `index` has the wrong shape.
    """
    text = text.replace("\x00", "")
    encoded = text.encode("utf-8")
    ranges: List[Tuple[int, int]] = []

    if facets is not None and not isinstance(facets, list):
        raise MalformedInputError("record facets is not a list")

    for facet in facets or ():
        if not isinstance(facet, dict):
            continue
        features = facet.get("features") or []
        if not isinstance(features, list):
            raise MalformedInputError("facet features is not a list")
        if not any(isinstance(f, dict) and f.get("$type") == LINK_FEATURE for f in features):
            continue
        index = facet.get("index") or {}
        if not isinstance(index, dict):
            raise MalformedInputError("facet index is not an object")
        start, end = index.get("byteStart"), index.get("byteEnd")
        if not isinstance(start, int) or not isinstance(end, int):
            continue
        if 0 <= start < end <= len(encoded):
            ranges.append((start, end))

    if ranges:
        kept = bytearray()
        pos = 0
        for start, end in sorted(ranges):
            if start > pos:
                kept += encoded[pos:start]
            pos = max(pos, end)
        kept += encoded[pos:]
        text = kept.decode("utf-8", errors="ignore")

    text = URL_PATTERN.sub(" ", text)
    return WHITESPACE_PATTERN.sub(" ", text).strip()


def _parse_timestamp(value: Any, cursor: Optional[int]) -> datetime:
    if isinstance(value, str) and value:
        candidate = value.strip()
        if candidate.endswith(("Z", "z")):
            candidate = candidate[:-1] + "+00:00"
        # Python < 3.11 only accepts up to microsecond precision
        candidate = re.sub(r"(\.\d{6})\d+", r"\1", candidate)
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed

    if cursor is not None:
        try:
            return datetime.fromtimestamp(cursor / 1_000_000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedInputError(f"cursor {cursor} is not a usable timestamp") from exc

    raise MalformedInputError("record has no usable timestamp")


def _ref_uri(container: Any, key: str) -> Optional[str]:
    if not isinstance(container, dict):
        return None
    ref = container.get(key)
    if isinstance(ref, dict) and isinstance(ref.get("uri"), str):
        return ref["uri"]
    return None


def _quoted_uri(embed: Any) -> Optional[str]:
    if not isinstance(embed, dict):
        return None
    kind = embed.get("$type")
    if kind == "app.bsky.embed.record":
        return _ref_uri(embed, "record")
    if kind == "app.bsky.embed.recordWithMedia":
        return _ref_uri(embed.get("record"), "record")
    return None


def _context_refs(record: Dict[str, Any]) -> Tuple[str, ...]:
    refs: List[str] = []
    reply = record.get("reply")
    for uri in (_ref_uri(reply, "parent"), _ref_uri(reply, "root"), _quoted_uri(record.get("embed"))):
        if uri and uri not in refs:
            refs.append(uri)
    return tuple(refs)


def _tags(record: Dict[str, Any]) -> Tuple[str, ...]:
    tags: List[str] = []
    if isinstance(record.get("reply"), dict):
        tags.append("reply")
    embed = record.get("embed")
    if isinstance(embed, dict):
        kind = embed.get("$type")
        if kind is not None and not isinstance(kind, str):
            raise MalformedInputError("embed $type is not a string")
        tags.extend(EMBED_TAGS.get(kind, ()))
    return tuple(tags)


def _embedding_text(text: str, embed: Any) -> str:
    if not isinstance(embed, dict) or embed.get("$type") != "app.bsky.embed.external":
        return text
    external = embed.get("external")
    if not isinstance(external, dict):
        return text
    parts = [text]
    for key in ("title", "description"):
        value = external.get(key)
        if isinstance(value, str) and value.strip():
            parts.append(value.strip())
    return " ".join(parts)

"""
Chat Event Model

The canonical unit of work flowing through the memory pipeline. A ChatEvent
is produced only by the normalizer and is immutable afterwards.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class ChatEvent(BaseModel):
    """
    A normalized message-creation event.

    `event_id` is derived from immutable fields of the source record, so
    redelivery of the same record yields the same `event_id`.
    """

    event_id: str = Field(
        ...,
        min_length=1,
        description="Deterministic identifier, e.g. at://did/collection/rkey.",
    )

    author_id: str = Field(..., min_length=1)

    text: str = Field(
        ...,
        min_length=1,
        description="Message text with link markup stripped.",
    )

    occurred_at: datetime = Field(
        ...,
        description="Source-reported creation time (timezone-aware).",
    )

    context_refs: Tuple[str, ...] = Field(
        default=(),
        description="URIs of related prior events (reply parent/root, quoted record).",
    )

    conversation_id: str = Field(
        ...,
        min_length=1,
        description="Thread root URI, or this event's own id when it starts a thread.",
    )

    embedding_text: str = Field(
        ...,
        min_length=1,
        description="Text handed to the embedder (message text plus link card context).",
    )

    tags: Tuple[str, ...] = ()
    langs: Tuple[str, ...] = ()
    source_cid: Optional[str] = None

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
    )

"""
Memory Store Data Models

EmbeddingRecord is the persisted memory unit: one vector plus the payload
needed to answer "what did this person say, roughly when".
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..events.models import ChatEvent


def record_id_for(event_id: str) -> uuid.UUID:
    """Deterministic store id for an event id."""
    return uuid.uuid5(uuid.NAMESPACE_URL, event_id)


class MemoryPayload(BaseModel):
    event_id: str = Field(..., min_length=1)
    author_id: str = Field(..., min_length=1)
    text: str = Field(..., description="Bounded excerpt of the message text.")
    occurred_at: datetime
    context_refs: Tuple[str, ...] = ()
    conversation_id: str = Field(..., min_length=1)
    tags: Tuple[str, ...] = ()

    model_config = ConfigDict(extra="forbid", frozen=True)


class EmbeddingRecord(BaseModel):
    id: uuid.UUID
    vector: Tuple[float, ...] = Field(..., min_length=1)
    payload: MemoryPayload

    model_config = ConfigDict(extra="forbid", frozen=True)

    @classmethod
    def from_event(
        cls,
        event: ChatEvent,
        vector: List[float],
        excerpt_chars: int = 2000,
    ) -> "EmbeddingRecord":
        return cls(
            id=record_id_for(event.event_id),
            vector=tuple(vector),
            payload=MemoryPayload(
                event_id=event.event_id,
                author_id=event.author_id,
                text=event.text[:excerpt_chars],
                occurred_at=event.occurred_at,
                context_refs=event.context_refs,
                conversation_id=event.conversation_id,
                tags=event.tags,
            ),
        )


class MemoryFilter(BaseModel):
    """Optional search constraints. Time bounds are inclusive."""
    author_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    conversation_id: Optional[str] = None

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("since", "until")
    @classmethod
    def _assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def _check_range(self) -> "MemoryFilter":
        if self.since and self.until and self.since > self.until:
            raise ValueError("'since' must not be after 'until'")
        return self

    def matches(self, payload: MemoryPayload) -> bool:
        if self.author_id is not None and payload.author_id != self.author_id:
            return False
        if self.conversation_id is not None and payload.conversation_id != self.conversation_id:
            return False
        if self.since is not None and payload.occurred_at < self.since:
            return False
        if self.until is not None and payload.occurred_at > self.until:
            return False
        return True


class SearchHit(BaseModel):
    record: EmbeddingRecord
    score: float

    model_config = ConfigDict(frozen=True)

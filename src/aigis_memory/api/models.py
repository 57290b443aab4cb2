"""
API Models for the operations API

Request/response schemas for health, stats and memory retrieval endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Literal, Optional, Tuple
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..store.models import EmbeddingRecord, SearchHit


class HealthStatus(BaseModel):
    status: Literal["ok"] = "ok"
    pipeline: Literal["running", "stopped"]


class PipelineStatsResponse(BaseModel):
    received: int
    normalized: int
    embedded: int
    stored: int
    dead_lettered: int
    dropped: Dict[str, int]
    max_queue_depth: Dict[str, int]
    queue_depths: Dict[str, int]
    committed_cursor: Optional[int] = None
    in_flight: int = 0
    feed_malformed: int = 0
    feed_reconnects: int = 0


class MemorySearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=4000)
    k: int = Field(default=5, ge=1, le=100)
    author_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_range(self) -> "MemorySearchRequest":
        if self.since and self.until and self.since > self.until:
            raise ValueError("'since' must not be after 'until'")
        return self


class MemoryItem(BaseModel):
    id: UUID
    event_id: str
    author_id: str
    text: str
    occurred_at: datetime
    conversation_id: str
    context_refs: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()

    @classmethod
    def from_record(cls, record: EmbeddingRecord) -> "MemoryItem":
        payload = record.payload
        return cls(
            id=record.id,
            event_id=payload.event_id,
            author_id=payload.author_id,
            text=payload.text,
            occurred_at=payload.occurred_at,
            conversation_id=payload.conversation_id,
            context_refs=payload.context_refs,
            tags=payload.tags,
        )


class MemorySearchResult(BaseModel):
    memory: MemoryItem
    score: float

    @classmethod
    def from_hit(cls, hit: SearchHit) -> "MemorySearchResult":
        return cls(memory=MemoryItem.from_record(hit.record), score=hit.score)


class ThreadResponse(BaseModel):
    conversation_id: str
    memories: List[MemoryItem]

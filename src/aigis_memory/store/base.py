"""
Memory Store Interface

A vector index keyed by deterministic record ids. Implementations:

- PgVectorMemoryStore  PostgreSQL + pgvector, the production backend
- InMemoryMemoryStore  numpy brute force, for development and tests

Contract
--------
- upsert is idempotent on id and replaces vector and payload together
- search ranks by descending similarity, ties broken by most recent
  occurred_at
- similarity metric and dimension are fixed for the store's lifetime;
  `initialize()` raises ConfigurationError when an existing collection was
  created with different ones
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Sequence
from uuid import UUID

from .models import EmbeddingRecord, MemoryFilter, SearchHit

METRICS = ("cosine", "l2", "dot")


class MemoryStore(ABC):
    def __init__(self, dimension: int, metric: str = "cosine") -> None:
        if metric not in METRICS:
            raise ValueError(f"Unknown similarity metric: {metric!r}")
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self.dimension = dimension
        self.metric = metric

    async def initialize(self) -> None:
        """Prepare the backend and verify its schema. Called once at startup."""

    async def close(self) -> None:
        """Release backend resources."""

    async def upsert(self, record: EmbeddingRecord) -> None:
        await self.upsert_many([record])

    @abstractmethod
    async def upsert_many(self, records: Sequence[EmbeddingRecord]) -> int:
        """Upsert records atomically as a group. Returns the number written."""

    @abstractmethod
    async def search(
        self,
        query_vector: Sequence[float],
        k: int = 5,
        filter: Optional[MemoryFilter] = None,
    ) -> List[SearchHit]:
        """Nearest neighbours of `query_vector`, best first."""

    @abstractmethod
    async def get(self, record_id: UUID) -> Optional[EmbeddingRecord]:
        """Fetch a record by id, or None."""

    @abstractmethod
    async def get_thread(self, conversation_id: str) -> List[EmbeddingRecord]:
        """All stored records of a conversation, oldest first."""

    @abstractmethod
    async def count(self) -> int:
        """Number of stored records."""

    def check_vectors(self, vectors: Iterable[Sequence[float]]) -> None:
        for vector in vectors:
            if len(vector) != self.dimension:
                raise ValueError(
                    f"Vector has {len(vector)} dimensions, store expects {self.dimension}"
                )

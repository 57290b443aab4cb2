"""
In-process memory store.

Brute-force numpy search over a dict of records. Not persistent; intended for
development runs (STORE_BACKEND=memory) and tests.
"""

from __future__ import annotations

from threading import RLock
from typing import Dict, List, Optional, Sequence
from uuid import UUID

import numpy as np

from .base import MemoryStore
from .models import EmbeddingRecord, MemoryFilter, SearchHit


class InMemoryMemoryStore(MemoryStore):
    def __init__(self, dimension: int, metric: str = "cosine") -> None:
        super().__init__(dimension, metric)
        self._records: Dict[UUID, EmbeddingRecord] = {}
        self._lock = RLock()

    async def upsert_many(self, records: Sequence[EmbeddingRecord]) -> int:
        if not records:
            return 0
        self.check_vectors(r.vector for r in records)
        with self._lock:
            for record in records:
                self._records[record.id] = record
        return len(records)

    async def search(
        self,
        query_vector: Sequence[float],
        k: int = 5,
        filter: Optional[MemoryFilter] = None,
    ) -> List[SearchHit]:
        self.check_vectors([query_vector])
        with self._lock:
            candidates = [
                r for r in self._records.values()
                if filter is None or filter.matches(r.payload)
            ]
        if not candidates or k <= 0:
            return []

        matrix = np.asarray([r.vector for r in candidates], dtype="float64")
        query = np.asarray(query_vector, dtype="float64")
        scores = self._scores(matrix, query)

        ranked = sorted(
            zip(candidates, scores),
            key=lambda pair: (-pair[1], -pair[0].payload.occurred_at.timestamp()),
        )
        return [SearchHit(record=r, score=float(s)) for r, s in ranked[:k]]

    async def get(self, record_id: UUID) -> Optional[EmbeddingRecord]:
        with self._lock:
            return self._records.get(record_id)

    async def get_thread(self, conversation_id: str) -> List[EmbeddingRecord]:
        with self._lock:
            thread = [
                r for r in self._records.values()
                if r.payload.conversation_id == conversation_id
            ]
        return sorted(thread, key=lambda r: r.payload.occurred_at)

    async def count(self) -> int:
        with self._lock:
            return len(self._records)

    def _scores(self, matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
        if self.metric == "dot":
            return matrix @ query
        if self.metric == "l2":
            return -np.linalg.norm(matrix - query, axis=1)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            cosine = np.where(norms > 0, (matrix @ query) / norms, 0.0)
        return cosine

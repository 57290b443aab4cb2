"""
Memory Retrieval

Read-side helper for consumers of the memory (reply generation, the
operations API): embed a query text and search the shared store.
"""

from __future__ import annotations

from typing import List, Optional

from ..core.retry import RetryPolicy, call_with_retry
from .base import MemoryStore
from .models import EmbeddingRecord, MemoryFilter, SearchHit


class MemoryRetriever:
    def __init__(
        self,
        embedder,
        store: MemoryStore,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy(attempts=2)

    async def recall(
        self,
        query: str,
        k: int = 5,
        filter: Optional[MemoryFilter] = None,
    ) -> List[SearchHit]:
        """Most similar stored events to `query`, best first."""
        if not query.strip():
            return []
        vectors = await call_with_retry(
            "recall",
            self.retry_policy,
            lambda: self.embedder.embed([query], batch_size=1),
        )
        return await self.store.search(vectors[0], k=k, filter=filter)

    async def get_thread(self, conversation_id: str) -> List[EmbeddingRecord]:
        """Stored events of a conversation, oldest first. Missing events are simply absent."""
        return await self.store.get_thread(conversation_id)

"""
Memory Store Package

Vector persistence for embedded chat events: the store interface, its
PostgreSQL/pgvector and in-process implementations, and the record models.
"""

from .base import MemoryStore
from .memory import InMemoryMemoryStore
from .models import EmbeddingRecord, MemoryFilter, MemoryPayload, SearchHit, record_id_for
from .pgvector import PgVectorMemoryStore
from .session import create_engine, create_session_factory


def build_store(settings, sessions=None) -> MemoryStore:
    """Construct the configured store backend. `sessions` is required for pgvector."""
    if settings.store_backend == "memory":
        return InMemoryMemoryStore(settings.embedding_dimension, settings.similarity_metric)
    if sessions is None:
        raise ValueError("pgvector backend needs a session factory")
    return PgVectorMemoryStore(
        sessions=sessions,
        collection=settings.memory_collection,
        dimension=settings.embedding_dimension,
        metric=settings.similarity_metric,
    )


__all__ = [
    "MemoryStore",
    "InMemoryMemoryStore",
    "PgVectorMemoryStore",
    "EmbeddingRecord",
    "MemoryFilter",
    "MemoryPayload",
    "SearchHit",
    "record_id_for",
    "create_engine",
    "create_session_factory",
    "build_store",
]

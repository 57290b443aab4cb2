"""
SQLAlchemy Schema

Defines, per collection:
- the memory table (one row per EmbeddingRecord, pgvector column)
- a shared `memory_collection` table recording each collection's dimension
  and similarity metric, checked at startup

Tables are built by a factory because the vector dimension is configuration.
"""

from __future__ import annotations

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from pgvector.sqlalchemy import Vector

# pgvector cannot build HNSW indexes above this many dimensions
HNSW_MAX_DIMENSION = 2000

OPERATOR_CLASSES = {
    "cosine": "vector_cosine_ops",
    "l2": "vector_l2_ops",
    "dot": "vector_ip_ops",
}


def collection_table(metadata: MetaData) -> Table:
    return Table(
        "memory_collection",
        metadata,
        Column("name", String(63), primary_key=True),
        Column("dimension", Integer, nullable=False),
        Column("metric", String(16), nullable=False),
        Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    )


def memory_table(metadata: MetaData, name: str, dimension: int, metric: str) -> Table:
    table = Table(
        name,
        metadata,
        Column("id", UUID(as_uuid=True), primary_key=True),
        Column("event_id", Text, nullable=False),
        Column("author_id", Text, nullable=False),
        Column("text", Text, nullable=False),
        Column("occurred_at", DateTime(timezone=True), nullable=False),
        Column("conversation_id", Text, nullable=False),
        Column("context_refs", JSONB, nullable=False, default=list),
        Column("tags", JSONB, nullable=False, default=list),
        Column("vector", Vector(dimension), nullable=False),
        Column(
            "updated_at",
            DateTime(timezone=True),
            nullable=False,
            server_default=func.now(),
            onupdate=func.now(),
        ),
        Index(f"idx_{name}_author_time", "author_id", "occurred_at"),
        Index(f"idx_{name}_conversation", "conversation_id", "occurred_at"),
    )

    if dimension <= HNSW_MAX_DIMENSION:
        Index(
            f"idx_{name}_vector_hnsw",
            table.c.vector,
            postgresql_using="hnsw",
            postgresql_ops={"vector": OPERATOR_CLASSES[metric]},
        )

    return table

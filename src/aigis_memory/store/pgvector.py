"""
Vector Store

PostgreSQL + pgvector backed memory store. One table per collection; writes
are single `INSERT ... ON CONFLICT (id) DO UPDATE` statements, so a
re-upserted record replaces vector and payload in one step and concurrent
writers racing on the same id converge.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import MetaData, and_, insert, select, text, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import DataError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.errors import ConfigurationError, StoreError, StoreRejectedError
from .base import MemoryStore
from .models import EmbeddingRecord, MemoryFilter, MemoryPayload, SearchHit
from .schema import collection_table, memory_table

logger = logging.getLogger("aigis.store")

PAYLOAD_COLUMNS = (
    "event_id",
    "author_id",
    "text",
    "occurred_at",
    "conversation_id",
    "context_refs",
    "tags",
    "vector",
)


class PgVectorMemoryStore(MemoryStore):
    """
    PostgreSQL-backed memory store using pgvector for similarity search.

    Parameters
    ----------
    sessions : async_sessionmaker[AsyncSession]
        Shared session factory; the store never creates its own engine.
    collection : str
        Table name for this collection.
    dimension : int
        Vector length, fixed at collection creation.
    metric : str
        "cosine", "l2" or "dot", fixed at collection creation.
    """

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        collection: str,
        dimension: int,
        metric: str = "cosine",
    ) -> None:
        super().__init__(dimension, metric)
        self._sessions = sessions
        self.collection = collection
        self.metadata = MetaData()
        self.collections = collection_table(self.metadata)
        self.table = memory_table(self.metadata, collection, dimension, metric)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Create the extension and tables if missing, then verify that an
        existing collection matches the configured dimension and metric.

        Raises
        ------
        ConfigurationError
            On dimension/metric mismatch or when the database is unreachable.
        """
        try:
            async with self._sessions() as session:
                await session.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
                connection = await session.connection()
                await connection.run_sync(self.metadata.create_all)

                row = (
                    await session.execute(
                        select(self.collections.c.dimension, self.collections.c.metric).where(
                            self.collections.c.name == self.collection
                        )
                    )
                ).first()

                if row is None:
                    await session.execute(
                        insert(self.collections).values(
                            name=self.collection,
                            dimension=self.dimension,
                            metric=self.metric,
                        )
                    )
                    logger.info(
                        "Created memory collection %s (%d-d, %s)",
                        self.collection,
                        self.dimension,
                        self.metric,
                    )
                await session.commit()
        except SQLAlchemyError as exc:
            raise ConfigurationError(
                f"Cannot initialize memory collection {self.collection}: {type(exc).__name__}"
            ) from exc

        if row is not None:
            self.verify_collection(row.dimension, row.metric)

    def verify_collection(self, dimension: int, metric: str) -> None:
        if dimension != self.dimension:
            raise ConfigurationError(
                f"Collection {self.collection} stores {dimension}-d vectors, "
                f"configured dimension is {self.dimension}"
            )
        if metric != self.metric:
            raise ConfigurationError(
                f"Collection {self.collection} was created with metric {metric}, "
                f"configured metric is {self.metric}"
            )

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def upsert_statement(self, records: Sequence[EmbeddingRecord]):
        rows = [
            {
                "id": record.id,
                "event_id": record.payload.event_id,
                "author_id": record.payload.author_id,
                "text": record.payload.text,
                "occurred_at": record.payload.occurred_at,
                "conversation_id": record.payload.conversation_id,
                "context_refs": list(record.payload.context_refs),
                "tags": list(record.payload.tags),
                "vector": list(record.vector),
            }
            for record in records
        ]
        stmt = pg_insert(self.table).values(rows)
        set_ = {name: stmt.excluded[name] for name in PAYLOAD_COLUMNS}
        set_["updated_at"] = func.now()
        return stmt.on_conflict_do_update(index_elements=[self.table.c.id], set_=set_)

    def _distance(self, query_vector: Sequence[float]):
        column = self.table.c.vector
        if self.metric == "l2":
            return column.l2_distance(query_vector)
        if self.metric == "dot":
            # negative inner product
            return column.max_inner_product(query_vector)
        return column.cosine_distance(query_vector)

    def _score(self, distance: float) -> float:
        if self.metric == "cosine":
            return 1.0 - float(distance)
        return -float(distance)

    def search_statement(
        self,
        query_vector: Sequence[float],
        k: int,
        filter: Optional[MemoryFilter] = None,
    ):
        distance = self._distance(list(query_vector)).label("distance")
        stmt = select(self.table, distance)

        conditions = self._conditions(filter)
        if conditions:
            stmt = stmt.where(and_(*conditions))

        return stmt.order_by(distance, self.table.c.occurred_at.desc()).limit(k)

    def _conditions(self, filter: Optional[MemoryFilter]) -> list:
        if filter is None:
            return []
        c = self.table.c
        conditions = []
        if filter.author_id is not None:
            conditions.append(c.author_id == filter.author_id)
        if filter.conversation_id is not None:
            conditions.append(c.conversation_id == filter.conversation_id)
        if filter.since is not None:
            conditions.append(c.occurred_at >= filter.since)
        if filter.until is not None:
            conditions.append(c.occurred_at <= filter.until)
        return conditions

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def upsert_many(self, records: Sequence[EmbeddingRecord]) -> int:
        if not records:
            return 0
        self.check_vectors(r.vector for r in records)

        # Postgres rejects ON CONFLICT touching the same row twice in one statement
        unique = list({r.id: r for r in records}.values())
        stmt = self.upsert_statement(unique)

        try:
            async with self._sessions() as session:
                await session.execute(stmt)
                await session.commit()
        except DataError as exc:
            logger.error(
                "Upsert of %d records into %s rejected: %s",
                len(unique),
                self.collection,
                exc,
            )
            raise StoreRejectedError(f"Upsert rejected: {type(exc).__name__}") from exc
        except SQLAlchemyError as exc:
            logger.error(
                "Upsert of %d records into %s failed: %s",
                len(unique),
                self.collection,
                exc,
            )
            raise StoreError(f"Upsert failed: {type(exc).__name__}") from exc

        return len(unique)

    async def search(
        self,
        query_vector: Sequence[float],
        k: int = 5,
        filter: Optional[MemoryFilter] = None,
    ) -> List[SearchHit]:
        self.check_vectors([query_vector])
        if k <= 0:
            return []
        stmt = self.search_statement(query_vector, k, filter)
        rows = await self._fetch(stmt)
        return [
            SearchHit(record=self._row_to_record(row), score=self._score(row.distance))
            for row in rows
        ]

    async def get(self, record_id: UUID) -> Optional[EmbeddingRecord]:
        rows = await self._fetch(select(self.table).where(self.table.c.id == record_id))
        return self._row_to_record(rows[0]) if rows else None

    async def get_thread(self, conversation_id: str) -> List[EmbeddingRecord]:
        stmt = (
            select(self.table)
            .where(self.table.c.conversation_id == conversation_id)
            .order_by(self.table.c.occurred_at)
        )
        return [self._row_to_record(row) for row in await self._fetch(stmt)]

    async def count(self) -> int:
        try:
            async with self._sessions() as session:
                result = await session.execute(select(func.count()).select_from(self.table))
                return int(result.scalar() or 0)
        except SQLAlchemyError as exc:
            raise StoreError(f"Count failed: {type(exc).__name__}") from exc

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _fetch(self, stmt) -> List[Any]:
        try:
            async with self._sessions() as session:
                result = await session.execute(stmt)
                return list(result.all())
        except SQLAlchemyError as exc:
            raise StoreError(f"Query failed: {type(exc).__name__}") from exc

    @staticmethod
    def _row_to_record(row: Any) -> EmbeddingRecord:
        return EmbeddingRecord(
            id=row.id,
            vector=tuple(float(x) for x in row.vector),
            payload=MemoryPayload(
                event_id=row.event_id,
                author_id=row.author_id,
                text=row.text,
                occurred_at=row.occurred_at,
                context_refs=tuple(row.context_refs or ()),
                conversation_id=row.conversation_id,
                tags=tuple(row.tags or ()),
            ),
        )

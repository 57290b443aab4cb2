"""
Memory Runtime

Builds every pipeline component from Settings, validates the configuration
against the live backends, and owns start/stop ordering.

Startup order
-------------
1. persona blob (opaque, optional)
2. memory store: create/verify collection (ConfigurationError on mismatch)
3. embedder: probe vector dimension (ConfigurationError on mismatch)
4. cursor: load the persisted resumption point
5. coordinator + feed subscription

Nothing subscribes to the feed until steps 1-4 have succeeded.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from .config import Settings
from .embeddings.embedder import Embedder
from .events.normalizer import EventNormalizer
from .feed.cursor import CursorStore, CursorTracker
from .feed.jetstream import JetstreamClient
from .persona import load_persona
from .pipeline.coordinator import PipelineCoordinator
from .pipeline.dead_letter import DeadLetterLog
from .store import MemoryStore, build_store, create_engine, create_session_factory
from .store.retriever import MemoryRetriever
from .core.retry import RetryPolicy

logger = logging.getLogger("aigis.runtime")


class MemoryRuntime:
    def __init__(
        self,
        settings: Settings,
        *,
        feed: Any = None,
        embedder: Optional[Embedder] = None,
        store: Optional[MemoryStore] = None,
    ) -> None:
        self.settings = settings
        self.embedder = embedder or Embedder.from_settings(settings)
        self.store = store
        self.persona: Optional[str] = None
        self.dead_letters = DeadLetterLog(settings.dead_letter_path)
        self.coordinator: Optional[PipelineCoordinator] = None
        self.retriever: Optional[MemoryRetriever] = None

        self._feed = feed
        self._engine: Optional[AsyncEngine] = None

    async def start(self) -> None:
        settings = self.settings
        logger.info("Starting aigis memory pipeline")

        self.persona = load_persona(settings.persona_path)

        try:
            await self._init_store()
            if settings.verify_embedding_dimension:
                dimension = await self.embedder.probe_dimension()
                logger.info("Embedding model %s verified (%d-d)", self.embedder.model, dimension)
        except Exception:
            await self._dispose()
            raise

        cursor_store = CursorStore(settings.cursor_path)
        tracker = CursorTracker(cursor_store.load())
        if tracker.committed is not None:
            logger.info("Resuming feed from cursor %d", tracker.committed)

        feed = self._feed or JetstreamClient.from_settings(
            settings, cursor_source=lambda: tracker.committed
        )

        self.coordinator = PipelineCoordinator.from_settings(
            settings,
            feed=feed,
            normalizer=EventNormalizer.from_settings(settings),
            embedder=self.embedder,
            store=self.store,
            dead_letters=self.dead_letters,
            tracker=tracker,
            cursor_store=cursor_store,
        )
        self.retriever = MemoryRetriever(
            self.embedder, self.store, RetryPolicy(attempts=2, max_wait=settings.retry_max_wait)
        )
        self.coordinator.start()

    async def stop(self) -> None:
        logger.info("Shutting down aigis memory pipeline")
        if self.coordinator is not None:
            await self.coordinator.stop()
        await self._dispose()

    @property
    def running(self) -> bool:
        return self.coordinator is not None and self.coordinator.running

    async def _init_store(self) -> None:
        if self.store is None:
            sessions = None
            if self.settings.store_backend == "pgvector":
                self._engine = create_engine(self.settings.database_url)
                sessions = create_session_factory(self._engine)
            self.store = build_store(self.settings, sessions)
        await self.store.initialize()

    async def _dispose(self) -> None:
        if self.store is not None:
            await self.store.close()
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None

"""
Bounded queues between pipeline stages.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from ..core.metrics import PipelineStats
from ..events.models import ChatEvent
from ..store.models import EmbeddingRecord

T = TypeVar("T")


@dataclass
class EmbedJob:
    """A normalized event waiting for its vector."""
    event: ChatEvent
    cursor: Optional[int] = None


@dataclass
class StoreJob:
    """An embedded event waiting to be upserted."""
    event: ChatEvent
    record: EmbeddingRecord
    cursor: Optional[int] = None


class StageQueue(Generic[T]):
    """
    asyncio.Queue with a fixed capacity and depth reporting.

    `put` blocks while the queue is full, which is what propagates
    backpressure from slow downstream stages to the feed consumer.
    """

    def __init__(self, name: str, maxsize: int, stats: PipelineStats) -> None:
        if maxsize <= 0:
            raise ValueError("stage queues must be bounded")
        self.name = name
        self.maxsize = maxsize
        self._queue: asyncio.Queue[T] = asyncio.Queue(maxsize=maxsize)
        self._stats = stats

    async def put(self, item: T) -> None:
        await self._queue.put(item)
        self._stats.observe_depth(self.name, self._queue.qsize())

    async def get(self) -> T:
        item = await self._queue.get()
        self._stats.observe_depth(self.name, self._queue.qsize())
        return item

    def get_nowait(self) -> T:
        item = self._queue.get_nowait()
        self._stats.observe_depth(self.name, self._queue.qsize())
        return item

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    def qsize(self) -> int:
        return self._queue.qsize()

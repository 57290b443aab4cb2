"""
Size-or-time batching over an asyncio.Queue.
"""

from __future__ import annotations

import asyncio
from typing import List, TypeVar

T = TypeVar("T")


async def collect_batch(
    queue: "asyncio.Queue[T]",
    max_size: int,
    max_wait: float,
) -> List[T]:
    """
    Wait for at least one item, then keep collecting until `max_size` items
    are held or `max_wait` seconds have passed since the first one arrived.

    The caller owns `task_done()` for every returned item.
    """
    first = await queue.get()
    batch: List[T] = [first]

    loop = asyncio.get_running_loop()
    deadline = loop.time() + max_wait

    while len(batch) < max_size:
        # Drain whatever is already queued without yielding
        try:
            batch.append(queue.get_nowait())
            continue
        except asyncio.QueueEmpty:
            pass

        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        try:
            batch.append(await asyncio.wait_for(queue.get(), timeout=remaining))
        except asyncio.TimeoutError:
            break

    return batch

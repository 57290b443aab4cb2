"""
Replay dead-lettered events into the memory store.

Reads the dead-letter log, re-embeds every recorded event and upserts it.
Ids are deterministic, so replaying an event that already made it into the
store just overwrites it. Afterwards the log is rewritten in place with only
the entries that still fail, their attempt count bumped. Run it while the
pipeline is stopped; entries the pipeline appends during a replay are lost
when the log is rewritten.

Usage:
    python scripts/replay_dead_letters.py [path/to/dead_letters.jsonl]
"""

import asyncio
import os
import sys

# Ensure src is in pythonpath
sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

from dotenv import load_dotenv
load_dotenv()

from aigis_memory.config import load_settings
from aigis_memory.core.errors import AigisError
from aigis_memory.embeddings.embedder import Embedder
from aigis_memory.logging_config import configure_logging
from aigis_memory.pipeline.dead_letter import DeadLetterLog
from aigis_memory.store import (
    EmbeddingRecord,
    build_store,
    create_engine,
    create_session_factory,
)


async def main(path=None):
    settings = load_settings()
    configure_logging(settings.log_level)

    path = path or settings.dead_letter_path
    log = DeadLetterLog(path)
    entries = list(log.entries())
    if not entries:
        print(f"No dead letters in {path}.")
        return 0

    print(f"Replaying {len(entries)} dead-lettered events from {path}...")

    engine = None
    sessions = None
    if settings.store_backend == "pgvector":
        engine = create_engine(settings.database_url)
        sessions = create_session_factory(engine)

    store = build_store(settings, sessions)
    embedder = Embedder.from_settings(settings)

    replayed = 0
    still_failing = []
    try:
        await store.initialize()
        for entry in entries:
            event = entry.event
            try:
                vectors = await embedder.embed([event.embedding_text], batch_size=1)
                record = EmbeddingRecord.from_event(event, vectors[0], settings.excerpt_chars)
                await store.upsert(record)
            except AigisError as e:
                print(f"Still failing: {event.event_id}: {e}")
                still_failing.append(
                    entry.model_copy(update={"error": f"{type(e).__name__}: {e}", "attempts": entry.attempts + 1})
                )
                continue
            replayed += 1
    finally:
        await store.close()
        if engine is not None:
            await engine.dispose()

    log.rewrite(still_failing)
    print(f"Done! {replayed} replayed, {len(still_failing)} still failing.")
    if still_failing:
        print(f"Remaining entries kept in {path}")
    return replayed


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else None))

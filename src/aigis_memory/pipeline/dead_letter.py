"""
Dead-Letter Record

JSON-lines log of events that failed permanently. The pipeline only appends;
the replay script rewrites it in place. Each line holds
the full ChatEvent, so `scripts/replay_dead_letters.py` can push it through
embedding and storage again once the cause is fixed.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Iterable, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..events.models import ChatEvent

logger = logging.getLogger("aigis.pipeline.dead_letter")


class DeadLetter(BaseModel):
    stage: str = Field(..., description="Pipeline stage that gave up: 'embed' or 'store'.")
    error: str
    attempts: int = Field(..., ge=1)
    cursor: Optional[int] = None
    failed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event: ChatEvent

    model_config = ConfigDict(extra="forbid", frozen=True)


class DeadLetterLog:
    """
    File-backed dead-letter sink.

    With `path=None` entries are kept in memory only.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self._path = Path(path) if path else None
        self._memory: List[DeadLetter] = []
        self._lock = RLock()
        self.count = 0

    def append(self, entry: DeadLetter) -> None:
        line = entry.model_dump_json()
        logger.error(
            "Dead-lettered %s at stage %s after %d attempts: %s | %s",
            entry.event.event_id,
            entry.stage,
            entry.attempts,
            entry.error,
            line,
        )
        with self._lock:
            self.count += 1
            if self._path is None:
                self._memory.append(entry)
                return
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")

    def rewrite(self, entries: Iterable[DeadLetter]) -> int:
        """
        Replace the whole log with `entries`, atomically. Returns how many
        entries the log now holds.
        """
        kept = list(entries)
        with self._lock:
            if self._path is None:
                self._memory = kept
                return len(kept)
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as f:
                for entry in kept:
                    f.write(entry.model_dump_json() + "\n")
            os.replace(tmp_path, self._path)
        logger.info("Dead-letter log rewritten with %d entries", len(kept))
        return len(kept)

    def entries(self) -> Iterator[DeadLetter]:
        """Iterate over recorded entries, skipping unreadable lines."""
        with self._lock:
            if self._path is None:
                yield from list(self._memory)
                return
            if not self._path.exists():
                return
            lines = self._path.read_text(encoding="utf-8").splitlines()

        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                yield DeadLetter.model_validate(json.loads(line))
            except ValueError as exc:
                logger.warning("Skipping unreadable dead letter at line %d: %s", number, exc)

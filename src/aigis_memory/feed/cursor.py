"""
Feed cursor bookkeeping.

CursorTracker computes the resumption point that is safe to commit: the
oldest cursor still in flight, so every record not yet stored (or dropped,
or dead-lettered) is redelivered after a reconnect or restart. Redelivered
records map to the same memory id and simply overwrite themselves.

CursorStore persists that value to a small JSON file.
"""

from __future__ import annotations

import json
import logging
import os
from collections import Counter
from pathlib import Path
from threading import RLock
from typing import Optional

logger = logging.getLogger("aigis.feed.cursor")


class CursorTracker:
    def __init__(self, initial: Optional[int] = None) -> None:
        self._initial = initial
        self._in_flight: Counter = Counter()
        self._last_seen: Optional[int] = None
        self._lock = RLock()

    def begin(self, cursor: Optional[int]) -> None:
        """Mark a record as pulled from the feed."""
        if cursor is None:
            return
        with self._lock:
            self._in_flight[cursor] += 1
            if self._last_seen is None or cursor > self._last_seen:
                self._last_seen = cursor

    def finish(self, cursor: Optional[int]) -> None:
        """Mark a record as having reached a terminal state."""
        if cursor is None:
            return
        with self._lock:
            remaining = self._in_flight[cursor] - 1
            if remaining > 0:
                self._in_flight[cursor] = remaining
            else:
                self._in_flight.pop(cursor, None)

    @property
    def in_flight(self) -> int:
        with self._lock:
            return sum(self._in_flight.values())

    @property
    def committed(self) -> Optional[int]:
        """Cursor to resume from (inclusive)."""
        with self._lock:
            if self._in_flight:
                return min(self._in_flight)
            if self._last_seen is not None:
                return self._last_seen + 1
            return self._initial


class CursorStore:
    """JSON-file persistence for the committed cursor."""

    def __init__(self, path: str) -> None:
        self._path = Path(path)
        self._lock = RLock()

    def load(self) -> Optional[int]:
        with self._lock:
            if not self._path.exists():
                return None
            try:
                with self._path.open("r", encoding="utf-8") as f:
                    data = json.load(f)
                cursor = data.get("cursor")
                return int(cursor) if cursor is not None else None
            except (OSError, ValueError, TypeError, AttributeError) as exc:
                logger.warning("Ignoring unreadable cursor file %s: %s", self._path, exc)
                return None

    def save(self, cursor: Optional[int]) -> bool:
        """Write `cursor` atomically. Returns False when there is nothing to save."""
        if cursor is None:
            return False
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as f:
                json.dump({"cursor": cursor}, f)
            os.replace(tmp_path, self._path)
        logger.debug("Cursor persisted: %d", cursor)
        return True

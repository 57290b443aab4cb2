"""
Process-wide logging setup.
"""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the root logger (idempotent)."""
    root = logging.getLogger()
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    if not any(getattr(h, "_aigis", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._aigis = True  # type: ignore[attr-defined]
        root.addHandler(handler)

    root.setLevel(resolved)
    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(max(resolved, logging.INFO))

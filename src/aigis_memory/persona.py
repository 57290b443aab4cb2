"""
Persona configuration blob.

The persona prompt is opaque to the memory pipeline: it is read once at
startup and handed, unparsed, to whatever generates replies.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger("aigis.persona")


def load_persona(path: str) -> Optional[str]:
    """Return the file contents, or None (logged) when it cannot be read."""
    try:
        content = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        logger.error("Could not read persona file %s: %s", path, exc)
        logger.info("Continuing without a persona; replies fall back to the default prompt.")
        return None

    logger.info("Loaded persona from %s (%d chars)", path, len(content))
    return content

"""
Raw feed records as delivered by the subscription, before normalization.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class RawRecord:
    """One decoded feed message."""
    data: Dict[str, Any] = field(repr=False)

    # Source resumption cursor (Jetstream `time_us`), if the message carried one
    cursor: Optional[int] = None

    @property
    def kind(self) -> Optional[str]:
        return self.data.get("kind")

    @property
    def author(self) -> Optional[str]:
        return self.data.get("did")

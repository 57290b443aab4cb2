"""
Operational metrics.

Prometheus collectors are process-wide; PipelineStats is a per-coordinator
snapshot used by the stats endpoint and by tests.
"""

from __future__ import annotations

from collections import Counter as _Tally
from dataclasses import dataclass, field
from typing import Dict

from prometheus_client import Counter, Gauge, Histogram

RECORDS_RECEIVED = Counter(
    "aigis_records_received_total",
    "Raw feed records pulled from the subscription",
)

RECORDS_DROPPED = Counter(
    "aigis_records_dropped_total",
    "Feed records dropped before embedding",
    ["reason"],
)

EVENTS_STORED = Counter(
    "aigis_events_stored_total",
    "Embedding records upserted into the memory store",
)

DEAD_LETTERS = Counter(
    "aigis_dead_letters_total",
    "Events moved to the dead-letter record",
    ["stage"],
)

RETRIES = Counter(
    "aigis_retries_total",
    "Retried backend calls",
    ["stage"],
)

FEED_RECONNECTS = Counter(
    "aigis_feed_reconnects_total",
    "Feed subscription reconnect attempts",
)

QUEUE_DEPTH = Gauge(
    "aigis_queue_depth",
    "Current depth of a pipeline queue",
    ["queue"],
)

EMBED_BATCH_SECONDS = Histogram(
    "aigis_embed_batch_seconds",
    "Latency of one embedding backend call",
)


@dataclass
class PipelineStats:
    received: int = 0
    normalized: int = 0
    embedded: int = 0
    stored: int = 0
    dead_lettered: int = 0
    dropped: _Tally = field(default_factory=_Tally)
    max_queue_depth: Dict[str, int] = field(default_factory=dict)

    def drop(self, reason: str) -> None:
        self.dropped[reason] += 1
        RECORDS_DROPPED.labels(reason=reason).inc()

    def observe_depth(self, queue: str, depth: int) -> None:
        QUEUE_DEPTH.labels(queue=queue).set(depth)
        if depth > self.max_queue_depth.get(queue, 0):
            self.max_queue_depth[queue] = depth

    def snapshot(self) -> dict:
        return {
            "received": self.received,
            "normalized": self.normalized,
            "embedded": self.embedded,
            "stored": self.stored,
            "dead_lettered": self.dead_lettered,
            "dropped": dict(self.dropped),
            "max_queue_depth": dict(self.max_queue_depth),
        }

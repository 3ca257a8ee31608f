# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Append-only, time-pruned history of normalized metrics snapshots."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, fields
from typing import Any

from .clock import HOUR_MS
from .normalizer import Counters, Number, is_number, num

DEFAULT_SAMPLE_RETENTION_MS = 2 * HOUR_MS
COUNTER_FIELDS = ("received", "delivered", "deferred", "bounced")


@dataclass(frozen=True)
class Sample:
    """Cumulative counters observed at poll time ``t`` (epoch ms)."""

    t: int
    received: Number = 0
    delivered: Number = 0
    deferred: Number = 0
    bounced: Number = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> Sample | None:
        """Rebuild a sample from persisted JSON; None when ``t`` is unusable."""
        if not isinstance(data, Mapping) or not is_number(data.get("t")):
            return None
        return cls(t=int(data["t"]), **{name: num(data.get(name)) for name in COUNTER_FIELDS})


@dataclass(frozen=True)
class QueueSnapshot:
    """Instantaneous queue gauges observed at poll time ``t``."""

    t: int
    depth: Number = 0
    ready: Number = 0
    scheduled: Number = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> QueueSnapshot | None:
        if not isinstance(data, Mapping) or not is_number(data.get("t")):
            return None
        names = [f.name for f in fields(cls) if f.name != "t"]
        return cls(t=int(data["t"]), **{name: num(data.get(name)) for name in names})


class SampleStore:
    """Samples and queue snapshots kept for ``retention_ms``.

    Entries are appended in poll order and never mutated; pruning drops
    everything older than ``now - retention_ms``.
    """

    def __init__(self, retention_ms: int = DEFAULT_SAMPLE_RETENTION_MS):
        self.retention_ms = int(retention_ms)
        self.samples: list[Sample] = []
        self.queue: list[QueueSnapshot] = []

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def latest(self) -> Sample | None:
        return self.samples[-1] if self.samples else None

    def append(self, counters: Counters, t: int) -> Sample:
        """Record one poll result and prune expired history."""
        sample = Sample(
            t=t,
            received=counters.received,
            delivered=counters.delivered,
            deferred=counters.deferred,
            bounced=counters.bounced,
        )
        self.samples.append(sample)
        self.queue.append(
            QueueSnapshot(t=t, depth=counters.depth, ready=counters.ready, scheduled=counters.scheduled)
        )
        self.prune(t)
        return sample

    def prune(self, now: int) -> int:
        """Drop entries older than the retention horizon; return how many went."""
        cutoff = now - self.retention_ms
        before = len(self.samples) + len(self.queue)
        self.samples = [s for s in self.samples if s.t >= cutoff]
        self.queue = [q for q in self.queue if q.t >= cutoff]
        return before - len(self.samples) - len(self.queue)

    def restore(self, samples: Iterable[Any], queue: Iterable[Any], now: int) -> None:
        """Replace the history with persisted entries, then apply retention."""
        self.samples = [s for s in map(Sample.from_dict, samples) if s is not None]
        self.queue = [q for q in map(QueueSnapshot.from_dict, queue) if q is not None]
        self.samples.sort(key=lambda s: s.t)
        self.queue.sort(key=lambda q: q.t)
        self.prune(now)

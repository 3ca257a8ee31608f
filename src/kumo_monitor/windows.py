# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Windowed sums, all-time peaks and per-minute rate series.

Everything here is derived from cumulative :class:`~kumo_monitor.samples.Sample`
pairs. A counter that goes down between two samples is an upstream reset
(KumoMTA restarted) and contributes zero instead of a negative delta.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from .clock import HOUR_MS, MINUTE_MS, format_clock
from .normalizer import Number, num
from .samples import COUNTER_FIELDS, QueueSnapshot, Sample, SampleStore

DEFAULT_SERIES_LIMIT = 120


@dataclass
class WindowStat:
    """Counter increments over a trailing window."""

    received: Number = 0
    delivered: Number = 0
    deferred: Number = 0
    bounced: Number = 0

    @property
    def out_sent(self) -> Number:
        return self.delivered + self.bounced

    def to_dict(self) -> dict[str, Number]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> WindowStat:
        """Per-field default to zero so partial legacy payloads load."""
        if not isinstance(data, Mapping):
            return cls()
        return cls(**{name: num(data.get(name)) for name in COUNTER_FIELDS})


def window_sum(samples: Sequence[Sample], end: int, duration: int, key: str) -> Number:
    """Sum of clamped increments of ``key`` for pairs ending inside ``(end - duration, end]``."""
    total: Number = 0
    start = end - duration
    for earlier, later in zip(samples, samples[1:]):
        if later.t <= start:
            continue
        total += max(0, num(getattr(later, key)) - num(getattr(earlier, key)))
    return total


def window_stat(samples: Sequence[Sample], end: int, duration: int) -> WindowStat:
    return WindowStat(**{key: window_sum(samples, end, duration, key) for key in COUNTER_FIELDS})


@dataclass
class Peaks:
    """Highest last-minute and last-hour stats ever observed."""

    minute: WindowStat = field(default_factory=WindowStat)
    hour: WindowStat = field(default_factory=WindowStat)

    def update(self, last_minute: WindowStat, last_hour: WindowStat) -> None:
        """Raise each field to ``max(existing, new)``; peaks never shrink."""
        for current, observed in ((self.minute, last_minute), (self.hour, last_hour)):
            for key in COUNTER_FIELDS:
                setattr(current, key, max(num(getattr(current, key)), num(getattr(observed, key))))

    def to_dict(self) -> dict[str, dict[str, Number]]:
        return {"minute": self.minute.to_dict(), "hour": self.hour.to_dict()}

    @classmethod
    def from_dict(cls, data: Any) -> Peaks:
        if not isinstance(data, Mapping):
            return cls()
        return cls(minute=WindowStat.from_dict(data.get("minute")), hour=WindowStat.from_dict(data.get("hour")))


@dataclass
class Session:
    """Result of one aggregation pass."""

    last_minute: WindowStat
    last_hour: WindowStat
    top_minute: WindowStat
    top_hour: WindowStat

    def to_dict(self) -> dict[str, dict[str, Number]]:
        return {
            "lastMinute": self.last_minute.to_dict(),
            "lastHour": self.last_hour.to_dict(),
            "topMinute": self.top_minute.to_dict(),
            "topHour": self.top_hour.to_dict(),
        }


class WindowAggregator:
    """Compute last-minute/last-hour stats over a store and maintain peaks."""

    def __init__(self, store: SampleStore, peaks: Peaks | None = None):
        self.store = store
        self.peaks = peaks or Peaks()

    def compute(self, now: int) -> Session:
        samples = self.store.samples
        last_minute = window_stat(samples, now, MINUTE_MS)
        last_hour = window_stat(samples, now, HOUR_MS)
        self.peaks.update(last_minute, last_hour)
        return Session(
            last_minute=last_minute,
            last_hour=last_hour,
            top_minute=WindowStat(**self.peaks.minute.to_dict()),
            top_hour=WindowStat(**self.peaks.hour.to_dict()),
        )


# ------------------------------------------------------------------ series
def per_minute_rate(earlier: Sample, later: Sample, key: str) -> float:
    """Implied per-minute rate between two samples; elapsed time floors at 1ms."""
    elapsed = max(1, later.t - earlier.t)
    return max(0, num(getattr(later, key)) - num(getattr(earlier, key))) * (MINUTE_MS / elapsed)


def rate_series(samples: Sequence[Sample], limit: int = DEFAULT_SERIES_LIMIT) -> Iterator[dict[str, Any]]:
    """Yield the most recent ``limit`` labeled rate points, oldest first."""
    first = max(1, len(samples) - max(0, limit))
    for i in range(first, len(samples)):
        earlier, later = samples[i - 1], samples[i]
        point: dict[str, Any] = {"t": format_clock(later.t)}
        for key in COUNTER_FIELDS:
            point[key] = per_minute_rate(earlier, later, key)
        yield point


def queue_series(queue: Sequence[QueueSnapshot], limit: int = DEFAULT_SERIES_LIMIT) -> Iterator[dict[str, Any]]:
    """Yield the most recent ``limit`` queue-depth points, oldest first."""
    for snapshot in queue[max(0, len(queue) - max(0, limit)):]:
        yield {"t": format_clock(snapshot.t), "queued": snapshot.depth}

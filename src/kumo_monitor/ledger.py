# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Bounded, time-decayed ledgers fed by the log watcher.

Three independent structures live here:

- :class:`DeferralLedger` - one ``{t, domain}`` entry per transient failure,
  persisted across restarts and used for the "top deferrals" rankings.
- :class:`LastErrorLedger` - the most recent failure reasons per domain.
- :class:`RecentEvents` - a flat ring buffer of display lines.

Only the deferral ledger is persisted; the other two are rebuilt live.
"""

from __future__ import annotations

from collections import Counter, deque
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from typing import Any

from .classifier import infer_level, strip_ansi
from .clock import HOUR_MS
from .normalizer import is_number, top_entries

DEFAULT_DEFERRAL_RETENTION_MS = 48 * HOUR_MS
DEFAULT_DEFERRAL_MAX_EVENTS = 50_000
DEFAULT_EVENTS_MAX = 500
DEFAULT_LAST_ERRORS_PER_DOMAIN = 20
DEFAULT_LAST_ERRORS_RETENTION_MS = 48 * HOUR_MS
EVENT_TEXT_LIMIT = 500
LAST_ERRORS_QUERY_MAX = 50
LAST_ERRORS_QUERY_DEFAULT = 10

# Share of ``max_events`` kept after an overflow.
OVERFLOW_KEEP_RATIO = 0.9


@dataclass(frozen=True)
class DeferralEvent:
    t: int
    domain: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> DeferralEvent | None:
        if not isinstance(data, Mapping) or not is_number(data.get("t")):
            return None
        domain = data.get("domain")
        if not isinstance(domain, str) or not domain:
            return None
        return cls(t=int(data["t"]), domain=domain.lower())


class DeferralLedger:
    """Time-ordered deferral events with age and count limits."""

    def __init__(
        self,
        retention_ms: int = DEFAULT_DEFERRAL_RETENTION_MS,
        max_events: int = DEFAULT_DEFERRAL_MAX_EVENTS,
    ):
        self.retention_ms = int(retention_ms)
        self.max_events = max(1, int(max_events))
        self.events: list[DeferralEvent] = []

    def __len__(self) -> int:
        return len(self.events)

    def record(self, domain: str, now: int) -> DeferralEvent | None:
        if not domain:
            return None
        event = DeferralEvent(t=now, domain=domain.lower())
        self.events.append(event)
        self.prune(now)
        return event

    def prune(self, now: int) -> None:
        """Apply the age horizon, then batch-evict the oldest on overflow."""
        cutoff = now - self.retention_ms
        self.events = [e for e in self.events if e.t >= cutoff]
        if len(self.events) > self.max_events:
            keep = max(1, int(self.max_events * OVERFLOW_KEEP_RATIO))
            self.events = self.events[-keep:]

    def restore(self, events: Iterable[Any], now: int) -> None:
        self.events = sorted(
            (e for e in map(DeferralEvent.from_dict, events) if e is not None),
            key=lambda e: e.t,
        )
        self.prune(now)

    def counts(self, since: int | None = None) -> Counter[str]:
        return Counter(e.domain for e in self.events if since is None or e.t >= since)

    def top_hour(self, now: int, limit: int = 10) -> list[dict[str, Any]]:
        return top_entries(self.counts(since=now - HOUR_MS), limit)

    def top_total(self, limit: int = 10) -> list[dict[str, Any]]:
        return top_entries(self.counts(), limit)


@dataclass
class LastError:
    """One detailed failure reason for a destination domain."""

    ts: int
    domain: str
    text: str
    provider: str | None = None
    code: int | str | None = None
    enhanced: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class LastErrorLedger:
    """Per-domain FIFO of recent failure reasons with a cross-domain age sweep."""

    def __init__(
        self,
        per_domain: int = DEFAULT_LAST_ERRORS_PER_DOMAIN,
        retention_ms: int = DEFAULT_LAST_ERRORS_RETENTION_MS,
    ):
        self.per_domain = max(1, int(per_domain))
        self.retention_ms = int(retention_ms)
        self._by_domain: dict[str, deque[LastError]] = {}

    def __contains__(self, domain: str) -> bool:
        return domain.lower() in self._by_domain

    def push(self, entry: LastError, now: int) -> None:
        entry.domain = entry.domain.lower()
        entry.ts = now
        rows = self._by_domain.get(entry.domain)
        if rows is None:
            rows = self._by_domain[entry.domain] = deque(maxlen=self.per_domain)
        rows.append(entry)
        self.sweep(now)

    def sweep(self, now: int) -> None:
        """Drop records older than the horizon for every domain."""
        cutoff = now - self.retention_ms
        for domain in list(self._by_domain):
            kept = deque((e for e in self._by_domain[domain] if e.ts >= cutoff), maxlen=self.per_domain)
            if kept:
                self._by_domain[domain] = kept
            else:
                del self._by_domain[domain]

    def rows(self, domain: str, limit: int = LAST_ERRORS_QUERY_DEFAULT) -> list[dict[str, Any]]:
        """Newest-first records for ``domain``."""
        limit = max(1, min(int(limit) or LAST_ERRORS_QUERY_DEFAULT, LAST_ERRORS_QUERY_MAX))
        entries = list(self._by_domain.get(domain.lower().strip(), ()))
        return [e.to_dict() for e in reversed(entries[-limit:])]

    def all_rows(self, limit: int = LAST_ERRORS_QUERY_DEFAULT) -> dict[str, list[dict[str, Any]]]:
        return {domain: self.rows(domain, limit) for domain in self._by_domain}


@dataclass(frozen=True)
class RecentEvent:
    t: int
    level: str
    msg: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RecentEvents:
    """Most-recent-N display lines, independent of domain."""

    def __init__(self, max_events: int = DEFAULT_EVENTS_MAX):
        self._events: deque[RecentEvent] = deque(maxlen=max(1, int(max_events)))

    def __len__(self) -> int:
        return len(self._events)

    def record(self, line: Any, now: int) -> RecentEvent | None:
        text = strip_ansi(str(line)).strip()
        if not text:
            return None
        event = RecentEvent(t=now, level=infer_level(text), msg=text[:EVENT_TEXT_LIMIT])
        self._events.append(event)
        return event

    def tail(self, count: int = 100) -> list[dict[str, Any]]:
        items = list(self._events)
        return [e.to_dict() for e in items[-count:]] if count > 0 else []

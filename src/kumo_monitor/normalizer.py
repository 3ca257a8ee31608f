# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Flatten a KumoMTA ``metrics.json`` document into authoritative counters.

KumoMTA publishes the same logical counter in several shapes depending on
version and configuration: a plain scalar, a per-service rollup, a
provider-keyed mapping or an array of tagged values. Each logical counter is
described here as an ordered tuple of extractor strategies; the first one
yielding a non-zero number wins and later strategies are never added on top.

The functions in this module are pure: malformed or missing values
normalize to zero and nothing raises.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass
from typing import Any

Number = int | float
Extractor = Callable[[Mapping[str, Any]], Number]

# Non-overlapping service keys, checked in order before summing everything.
SERVICE_PRECEDENCE = ("smtp_client", "smtp", "http", "submission", "esmtp_listener")
DATA_SPOOL = "data spool"


def is_number(value: Any) -> bool:
    """True for finite ints and floats (booleans excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def num(value: Any) -> Number:
    """Return ``value`` when it is a finite number, else 0."""
    return value if is_number(value) else 0


def sum_numbers(mapping: Any) -> Number:
    if not isinstance(mapping, Mapping):
        return 0
    return sum(v for v in mapping.values() if is_number(v))


def sum_tagged(items: Any, tag: str = "@") -> Number:
    """Sum the numeric ``tag`` member of every dict in ``items``."""
    if not isinstance(items, list):
        return 0
    return sum(item[tag] for item in items if isinstance(item, Mapping) and is_number(item.get(tag)))


def pick_service_total(services: Any) -> Number:
    """Prefer a single service rollup to avoid counting parent and child twice."""
    if not isinstance(services, Mapping):
        return 0
    for key in SERVICE_PRECEDENCE:
        if is_number(services.get(key)):
            return services[key]
    return sum_numbers(services)


def metric_value(document: Mapping[str, Any], key: str) -> Any:
    """Return ``document[key]["value"]`` or None when the shape does not match."""
    node = document.get(key) if isinstance(document, Mapping) else None
    if isinstance(node, Mapping):
        return node.get("value")
    return None


def _child(value: Any, name: str) -> Any:
    return value.get(name) if isinstance(value, Mapping) else None


# ------------------------------------------------------------------ strategies
def scalar(key: str) -> Extractor:
    """(a) ``doc[key].value`` as a plain number."""
    def extract(document: Mapping[str, Any]) -> Number:
        return num(metric_value(document, key))
    extract.__name__ = f"scalar[{key}]"
    return extract


def service_rollup(key: str) -> Extractor:
    """(b) ``doc[key].value.service`` reduced with :func:`pick_service_total`."""
    def extract(document: Mapping[str, Any]) -> Number:
        return pick_service_total(_child(metric_value(document, key), "service"))
    extract.__name__ = f"service[{key}]"
    return extract


def provider_sum(key: str) -> Extractor:
    """(c) sum over ``doc[key].value.provider``."""
    def extract(document: Mapping[str, Any]) -> Number:
        return sum_numbers(_child(metric_value(document, key), "provider"))
    extract.__name__ = f"provider[{key}]"
    return extract


def tagged_array_sum(key: str, tag: str = "@") -> Extractor:
    """(d) sum of ``item[tag]`` over the array ``doc[key].value``."""
    def extract(document: Mapping[str, Any]) -> Number:
        return sum_tagged(metric_value(document, key), tag)
    extract.__name__ = f"tagged[{key}]"
    return extract


def derived_sum(*counters: str) -> Extractor:
    """(e) sum of other logical counters, each resolved through its own chain."""
    def extract(document: Mapping[str, Any]) -> Number:
        return sum(first_match(document, COUNTER_RULES[name]) for name in counters)
    extract.__name__ = f"derived[{'+'.join(counters)}]"
    return extract


def _outcome_chain(base: str) -> tuple[Extractor, ...]:
    return (
        scalar(base),
        service_rollup(base),
        provider_sum(f"{base}_by_provider"),
        tagged_array_sum(f"{base}_by_provider_and_source"),
    )


COUNTER_RULES: dict[str, tuple[Extractor, ...]] = {
    "delivered": _outcome_chain("total_messages_delivered"),
    # transient failures only; retries are not folded in
    "deferred": _outcome_chain("total_messages_transfail"),
    "bounced": _outcome_chain("total_messages_fail"),
    "received": (scalar("total_messages_received"), service_rollup("total_messages_received")),
    "ready": (service_rollup("ready_count"),),
    "scheduled": (scalar("scheduled_count_total"), scalar("scheduled_count")),
    "depth": (
        provider_sum("queued_count_by_provider"),
        tagged_array_sum("queued_count_by_provider_and_pool"),
        derived_sum("ready", "scheduled"),
    ),
    "active_connections": (service_rollup("connection_count"),),
}


def first_match(document: Mapping[str, Any], extractors: tuple[Extractor, ...]) -> Number:
    """Evaluate ``extractors`` in order and return the first non-zero result."""
    for extractor in extractors:
        value = extractor(document)
        if value:
            return value
    return 0


# ------------------------------------------------------------------- counters
@dataclass(frozen=True)
class Counters:
    """Flat view of one metrics snapshot."""

    received: Number = 0
    delivered: Number = 0
    deferred: Number = 0
    bounced: Number = 0
    ready: Number = 0
    scheduled: Number = 0
    depth: Number = 0
    active_connections: Number = 0
    disk_free_percent: float | None = None
    inode_free_percent: float | None = None

    @property
    def out_sent(self) -> Number:
        """Messages that actually left the box."""
        return self.delivered + self.bounced

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _spool_percent(document: Mapping[str, Any], key: str) -> float | None:
    value = _child(_child(metric_value(document, key), "name"), DATA_SPOOL)
    return value if is_number(value) else None


def normalize(document: Any) -> Counters:
    """Produce :class:`Counters` from an arbitrarily shaped metrics document."""
    if not isinstance(document, Mapping):
        document = {}
    values = {name: first_match(document, rules) for name, rules in COUNTER_RULES.items()}
    return Counters(
        **values,
        disk_free_percent=_spool_percent(document, "disk_free_percent"),
        inode_free_percent=_spool_percent(document, "disk_free_inodes_percent"),
    )


def top_entries(mapping: Any, limit: int = 10) -> list[dict[str, Any]]:
    """Rank a ``{key: number}`` mapping, largest first."""
    if not isinstance(mapping, Mapping):
        return []
    entries = [{"key": str(k), "value": num(v)} for k, v in mapping.items()]
    entries.sort(key=lambda e: e["value"], reverse=True)
    return entries[:limit]


def top_domains(document: Any, limit: int = 10) -> list[dict[str, Any]]:
    """Domains with the most scheduled messages."""
    if not isinstance(document, Mapping):
        return []
    return top_entries(_child(metric_value(document, "scheduled_by_domain"), "domain"), limit)


def top_providers(document: Any, limit: int = 10) -> list[dict[str, Any]]:
    """Providers with the most delivered messages."""
    if not isinstance(document, Mapping):
        return []
    return top_entries(_child(metric_value(document, "total_messages_delivered_by_provider"), "provider"), limit)

# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics describing the monitor itself."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class MonitorMetrics:
    """Wrapper around the Prometheus registry used by the monitor."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.polls = Counter("kmon_polls_total", "Metrics polls by outcome", ["outcome"], registry=self.registry)
        self.deferrals = Counter("kmon_deferrals_total", "Deferral events extracted from logs", registry=self.registry)
        self.log_lines = Counter("kmon_log_lines_total", "Log lines classified", ["source"], registry=self.registry)
        self.restarts = Counter(
            "kmon_stream_restarts_total", "Log stream restarts", ["source"], registry=self.registry
        )
        self.saves = Counter("kmon_state_saves_total", "State file saves by outcome", ["outcome"], registry=self.registry)
        self.samples = Gauge("kmon_samples_retained", "Samples currently retained", registry=self.registry)
        self.queue_depth = Gauge("kmon_queue_depth", "Last observed queue depth", registry=self.registry)

    def inc_poll(self, outcome: str):
        """Count a poll attempt (``ok``, ``http_error`` or ``failed``)."""
        self.polls.labels(outcome=outcome or "ok").inc()

    def inc_deferral(self):
        self.deferrals.inc()

    def inc_log_line(self, source: str):
        self.log_lines.labels(source=source or "default").inc()

    def inc_restart(self, source: str):
        self.restarts.labels(source=source or "default").inc()

    def inc_save(self, outcome: str):
        self.saves.labels(outcome=outcome).inc()

    def set_samples(self, value: int):
        self.samples.set(value)

    def set_queue_depth(self, value: float):
        self.queue_depth.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)

# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration for the KumoMTA monitor.

:class:`MonitorService` owns every in-memory store and runs three kinds of
background work on one event loop:

- the poll loop: fetch ``metrics.json``, normalize it, append a sample;
- the log watcher: one supervised subprocess per log source;
- the persist loop: periodic state snapshot to disk.

Each store has a single writer, and handlers never run in parallel, so no
locking is involved. A failing tick is logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
import math
import signal
from collections.abc import Callable, Sequence
from typing import Any

import aiohttp

from .clock import now_ms
from .config import Settings
from .fetcher import MetricsFetcher
from .ledger import DeferralLedger, LastErrorLedger, RecentEvents
from .logger import get_logger
from .normalizer import normalize, num, top_domains, top_providers
from .persistence import DEFAULT_FLUSH_TIMEOUT, PersistenceManager
from .prometheus import MonitorMetrics
from .samples import SampleStore
from .watcher import LogSource, LogTailWatcher, default_sources
from .windows import Peaks, WindowAggregator, WindowStat, queue_series, rate_series

RECENT_EVENTS_IN_SUMMARY = 100
TOP_LIMIT = 10
LIST_KEYS = ("topDomains", "topProviders", "topDeferralsHour", "topDeferralsTotal")


def _traffic(stat: WindowStat) -> dict[str, Any]:
    return {"in": num(stat.received), "out": stat.out_sent}


class MonitorService:
    """Coordinate sampling, log tailing, aggregation and persistence."""

    def __init__(
        self,
        *,
        kumo_url: str | None = "http://127.0.0.1:8000",
        poll_interval: float = 3.0,
        sample_retention: int = 2 * 3600,
        series_limit: int = 120,
        state_path: str = "/opt/kumo-ui-api/state.json",
        save_interval: float = 10.0,
        deferral_retention: int = 48 * 3600,
        deferral_max_events: int = 50_000,
        events_max: int = 500,
        last_errors_per_domain: int = 20,
        last_errors_retention: int = 48 * 3600,
        log_sources: Sequence[LogSource] | None = None,
        restart_delay: float = 2.0,
        fetcher: MetricsFetcher | None = None,
        metrics: MonitorMetrics | None = None,
        logger=None,
        spawn=None,
        clock: Callable[[], int] = now_ms,
    ):
        """Prepare the stores and their collaborators; nothing runs yet."""
        self.logger = logger or get_logger()
        self.metrics = metrics or MonitorMetrics()
        self.fetcher = fetcher or MetricsFetcher(kumo_url)
        self._clock = clock
        self._poll_interval = max(0.05, float(poll_interval))
        self._save_interval = max(0.05, float(save_interval))
        self._series_limit = max(1, int(series_limit))

        self.store = SampleStore(int(sample_retention) * 1000)
        self.peaks = Peaks()
        self.aggregator = WindowAggregator(self.store, self.peaks)
        self.deferrals = DeferralLedger(int(deferral_retention) * 1000, deferral_max_events)
        self.last_error_ledger = LastErrorLedger(last_errors_per_domain, int(last_errors_retention) * 1000)
        self.events = RecentEvents(events_max)
        self.last_raw: dict[str, Any] | None = None
        self._cached_lists: dict[str, list[dict[str, Any]]] = {key: [] for key in LIST_KEYS}

        self.watcher = LogTailWatcher(
            list(log_sources or ()),
            self.deferrals,
            self.last_error_ledger,
            self.events,
            restart_delay=restart_delay,
            spawn=spawn,
            metrics=self.metrics,
            clock=clock,
        )
        self.persistence = PersistenceManager(
            state_path,
            self.store,
            self.peaks,
            self.deferrals,
            metrics=self.metrics,
            clock=clock,
        )

        self._stop = asyncio.Event()
        self._task_poll: asyncio.Task | None = None
        self._task_persist: asyncio.Task | None = None
        self._started = False

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> MonitorService:
        """Build a service from :class:`~kumo_monitor.config.Settings`."""
        kwargs: dict[str, Any] = dict(
            kumo_url=settings.kumo_url,
            poll_interval=settings.poll_interval,
            sample_retention=settings.sample_retention,
            series_limit=settings.series_limit,
            state_path=settings.state_path,
            save_interval=settings.save_interval,
            deferral_retention=settings.deferral_retention,
            deferral_max_events=settings.deferral_max_events,
            events_max=settings.events_max,
            last_errors_per_domain=settings.last_errors_per_domain,
            last_errors_retention=settings.last_errors_retention,
            log_sources=default_sources(settings.tailer, settings.log_dir, settings.journal_unit),
            restart_delay=settings.restart_delay,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    # ----------------------------------------------------------------- lifecycle
    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Restore persisted state, then start polling, tailing and saving."""
        if self._started:
            return
        await self.persistence.load()
        self._stop.clear()
        await self.watcher.start()
        self._task_poll = asyncio.create_task(self._poll_loop(), name="metrics-poll-loop")
        self._task_persist = asyncio.create_task(self._persist_loop(), name="state-persist-loop")
        self._started = True
        self.logger.info("Monitor started (polling %s every %.1fs)", self.fetcher.base_url, self._poll_interval)

    async def stop(self) -> None:
        """Stop background work and write the final state snapshot."""
        if not self._started:
            return
        self._started = False
        self._stop.set()
        await self.watcher.stop()
        await asyncio.gather(
            *(task for task in [self._task_poll, self._task_persist] if task),
            return_exceptions=True,
        )
        await self.persistence.flush(DEFAULT_FLUSH_TIMEOUT)

    async def run_forever(self) -> None:
        """Run headless until SIGINT or SIGTERM, then flush state and return."""
        loop = asyncio.get_running_loop()
        shutdown = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, shutdown.set)
            except (NotImplementedError, RuntimeError):  # pragma: no cover - platform specific
                pass
        await self.start()
        try:
            await shutdown.wait()
        finally:
            self.logger.info("Shutting down, saving state")
            await self.stop()

    # ------------------------------------------------------------------ polling
    async def poll_once(self) -> bool:
        """Fetch and record one metrics snapshot; False when the tick is skipped."""
        try:
            document = await self.fetcher.fetch()
        except aiohttp.ClientResponseError as exc:
            self.logger.warning("KumoMTA metrics returned HTTP %s", exc.status)
            self.metrics.inc_poll("http_error")
            return False
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            self.logger.warning("KumoMTA metrics fetch failed: %s", exc)
            self.metrics.inc_poll("failed")
            return False
        self.last_raw = document
        counters = normalize(document)
        self.store.append(counters, self._clock())
        self.metrics.inc_poll("ok")
        self.metrics.set_samples(len(self.store))
        self.metrics.set_queue_depth(counters.depth)
        return True

    async def _poll_loop(self) -> None:
        """Poll on a fixed cadence until stopped."""
        while not self._stop.is_set():
            try:
                await self.poll_once()
            except Exception as exc:  # pragma: no cover - defensive
                self.logger.exception("Unhandled error in metrics poll loop: %s", exc)
            await self._wait_for_stop(self._poll_interval)

    async def _persist_loop(self) -> None:
        """Save state every interval; the final save belongs to :meth:`stop`."""
        while not self._stop.is_set():
            await self._wait_for_stop(self._save_interval)
            if self._stop.is_set():
                return
            try:
                await self.persistence.save_quietly()
            except Exception as exc:  # pragma: no cover - defensive
                self.logger.exception("Unhandled error in persist loop: %s", exc)

    async def _wait_for_stop(self, timeout: float) -> None:
        """Sleep up to ``timeout`` seconds, returning early when stop is requested."""
        if self._stop.is_set():
            return
        if math.isinf(timeout):
            await self._stop.wait()
            return
        try:
            async with asyncio.timeout(max(0.0, timeout)):
                await self._stop.wait()
        except asyncio.TimeoutError:
            return

    # ------------------------------------------------------------------ queries
    async def raw_metrics(self) -> dict[str, Any]:
        """Fetch the upstream document as-is; errors propagate to the caller."""
        return await self.fetcher.fetch()

    def summary(self, now: int | None = None) -> dict[str, Any]:
        """Dashboard payload: totals, windows, peaks, series, rankings, events."""
        now = self._clock() if now is None else now
        document = self.last_raw or {}
        counters = normalize(document)
        latest = self.store.latest
        received = latest.received if latest is not None else counters.received

        session = self.aggregator.compute(now)

        fresh = {
            "topDomains": top_domains(document, TOP_LIMIT),
            "topProviders": top_providers(document, TOP_LIMIT),
            "topDeferralsHour": self.deferrals.top_hour(now, TOP_LIMIT),
            "topDeferralsTotal": self.deferrals.top_total(TOP_LIMIT),
        }
        # keep the last non-empty ranking so cards do not vanish in quiet periods
        lists = {key: fresh[key] or self._cached_lists[key] for key in LIST_KEYS}
        self._cached_lists = lists

        return {
            "disk": {
                "freePercent": counters.disk_free_percent,
                "inodeFreePercent": counters.inode_free_percent,
            },
            "connections": {"active": counters.active_connections},
            "queue": {"depth": counters.depth, "ready": counters.ready, "scheduled": counters.scheduled},
            "totals": {
                "received": received,
                "delivered": counters.delivered,
                "deferred": counters.deferred,
                "bounced": counters.bounced,
            },
            "session": session.to_dict(),
            "series": {
                "perMinute": list(rate_series(self.store.samples, self._series_limit)),
                "queue": list(queue_series(self.store.queue, self._series_limit)),
            },
            "lists": lists,
            "events": self.events.tail(RECENT_EVENTS_IN_SUMMARY),
            "traffic": {
                "total": {"in": received, "out": counters.out_sent},
                "lastMinute": _traffic(session.last_minute),
                "lastHour": _traffic(session.last_hour),
                "topMinute": _traffic(session.top_minute),
                "topHour": _traffic(session.top_hour),
            },
        }

    def last_errors(self, domain: str | None = None, limit: int = 10) -> dict[str, Any]:
        """Recent failure reasons, newest first, for one domain or all of them."""
        domain = (domain or "").strip().lower()
        if domain:
            return {"domain": domain, "rows": self.last_error_ledger.rows(domain, limit)}
        return self.last_error_ledger.all_rows(limit)

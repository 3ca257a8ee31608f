import asyncio
import json
import types

import aiohttp
import pytest

from kumo_monitor.core import MonitorService
from kumo_monitor.fetcher import MetricsFetcher
from kumo_monitor.prometheus import MonitorMetrics

BASE = 1_700_000_000_000


class DummyUpstream:
    """Scripted replacement for KumoMTA's metrics endpoint."""

    def __init__(self):
        self.documents = []
        self.error: Exception | None = None
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.documents.pop(0) if self.documents else {}


def counters_doc(received, delivered=0, **extra):
    doc = {
        "total_messages_received": {"value": received},
        "total_messages_delivered": {"value": delivered},
    }
    doc.update(extra)
    return doc


@pytest.fixture
def clock():
    return types.SimpleNamespace(now=BASE)


@pytest.fixture
def upstream():
    return DummyUpstream()


@pytest.fixture
def service(tmp_path, clock, upstream):
    return MonitorService(
        fetcher=MetricsFetcher(fetch_callable=upstream),
        metrics=MonitorMetrics(),
        state_path=str(tmp_path / "state.json"),
        poll_interval=0.05,
        save_interval=60,
        log_sources=[],
        clock=lambda: clock.now,
    )


@pytest.mark.asyncio
async def test_poll_once_appends_sample(service, upstream):
    upstream.documents.append(counters_doc(10, 4, queued_count_by_provider={"value": {"provider": {"a": 3}}}))

    assert await service.poll_once() is True
    assert len(service.store) == 1
    assert service.store.latest.received == 10
    assert service.store.queue[0].depth == 3
    output = service.metrics.generate_latest()
    assert b'kmon_polls_total{outcome="ok"} 1.0' in output
    assert b"kmon_queue_depth 3.0" in output


@pytest.mark.asyncio
async def test_fetch_failure_skips_the_tick(service, upstream):
    upstream.error = aiohttp.ClientConnectionError("refused")
    assert await service.poll_once() is False

    upstream.error = asyncio.TimeoutError()
    assert await service.poll_once() is False

    upstream.error = json.JSONDecodeError("Expecting value", "<html>", 0)
    assert await service.poll_once() is False

    assert len(service.store) == 0
    assert service.last_raw is None
    assert b'kmon_polls_total{outcome="failed"} 3.0' in service.metrics.generate_latest()


@pytest.mark.asyncio
async def test_http_error_is_counted_separately(service, upstream):
    upstream.error = aiohttp.ClientResponseError(
        types.SimpleNamespace(real_url="http://127.0.0.1:8000/metrics.json"), (), status=503
    )
    assert await service.poll_once() is False
    assert b'kmon_polls_total{outcome="http_error"} 1.0' in service.metrics.generate_latest()


def test_summary_before_first_poll_is_all_zero(service):
    summary = service.summary()

    assert summary["totals"] == {"received": 0, "delivered": 0, "deferred": 0, "bounced": 0}
    assert summary["queue"] == {"depth": 0, "ready": 0, "scheduled": 0}
    assert summary["disk"] == {"freePercent": None, "inodeFreePercent": None}
    assert summary["series"] == {"perMinute": [], "queue": []}
    assert summary["session"]["lastMinute"]["received"] == 0
    assert summary["lists"]["topDomains"] == []
    assert summary["events"] == []


@pytest.mark.asyncio
async def test_summary_windows_series_and_traffic(service, upstream, clock):
    upstream.documents.extend([counters_doc(100, 50), counters_doc(160, 80, total_messages_fail={"value": 5})])
    await service.poll_once()
    clock.now = BASE + 60_000
    await service.poll_once()

    summary = service.summary()
    assert summary["totals"]["received"] == 160
    assert summary["session"]["lastMinute"]["received"] == 60
    assert summary["session"]["topMinute"]["delivered"] == 30
    assert summary["series"]["perMinute"][0]["received"] == pytest.approx(60.0)
    assert len(summary["series"]["queue"]) == 2
    assert summary["traffic"]["total"] == {"in": 160, "out": 85}
    assert summary["traffic"]["lastMinute"] == {"in": 60, "out": 35}


@pytest.mark.asyncio
async def test_rankings_survive_an_empty_snapshot(service, upstream):
    upstream.documents.extend(
        [{"scheduled_by_domain": {"value": {"domain": {"slow.example.com": 12}}}}, {}]
    )
    await service.poll_once()
    assert service.summary()["lists"]["topDomains"] == [{"key": "slow.example.com", "value": 12}]

    await service.poll_once()
    assert service.summary()["lists"]["topDomains"] == [{"key": "slow.example.com", "value": 12}]


def test_deferrals_feed_rankings_and_last_errors(service):
    line = '{"event":"TransientFailure","domain":"Example.com","response":{"code":450,"text":"try again"}}'
    service.watcher.handle_line("tailer", line)

    summary = service.summary()
    assert summary["lists"]["topDeferralsHour"] == [{"key": "example.com", "value": 1}]
    assert summary["lists"]["topDeferralsTotal"] == [{"key": "example.com", "value": 1}]
    assert summary["events"][-1]["msg"].startswith("DEFERRAL example.com 450")

    one = service.last_errors(" EXAMPLE.com ", limit=5)
    assert one["domain"] == "example.com"
    assert one["rows"][0]["code"] == 450
    assert list(service.last_errors()) == ["example.com"]


@pytest.mark.asyncio
async def test_start_and_stop_flush_state(service, tmp_path):
    await service.start()
    assert service.started
    await asyncio.sleep(0.02)
    await service.stop()

    assert not service.started
    state = json.loads((tmp_path / "state.json").read_text())
    assert len(state["samples"]) >= 1


@pytest.mark.asyncio
async def test_start_restores_previous_state(tmp_path, clock, upstream):
    (tmp_path / "state.json").write_text(
        json.dumps({"samples": [{"t": BASE - 1_000, "received": 7}], "peaks": {"hour": {"delivered": 99}}})
    )
    service = MonitorService(
        fetcher=MetricsFetcher(fetch_callable=upstream),
        state_path=str(tmp_path / "state.json"),
        log_sources=[],
        clock=lambda: clock.now,
    )
    await service.persistence.load()

    assert service.store.samples[0].received == 7
    assert service.summary()["session"]["topHour"]["delivered"] == 99

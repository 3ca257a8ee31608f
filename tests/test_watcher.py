import asyncio

import pytest

from kumo_monitor.ledger import DeferralLedger, LastErrorLedger, RecentEvents
from kumo_monitor.watcher import (
    DEFAULT_MAX_LINE_BYTES,
    LineBuffer,
    LogSource,
    LogTailWatcher,
    StreamState,
    SupervisedStream,
    default_sources,
)

BASE = 1_700_000_000_000


class DummyStream:
    def __init__(self, chunks=(), block=False):
        self._chunks = list(chunks)
        self._block = block

    async def read(self, _size):
        if self._chunks:
            return self._chunks.pop(0)
        if self._block:
            await asyncio.Event().wait()
        return b""


class DummyProcess:
    def __init__(self, stdout=(), stderr=(), code=1, block=False):
        self.stdout = DummyStream(stdout, block=block)
        self.stderr = DummyStream(stderr)
        self.returncode = None
        self.pid = 4242
        self.terminated = False
        self._code = code

    async def wait(self):
        self.returncode = self._code
        return self._code

    def terminate(self):
        self.terminated = True


def make_watcher(**kwargs):
    return LogTailWatcher(
        kwargs.pop("sources", []),
        DeferralLedger(),
        LastErrorLedger(),
        RecentEvents(),
        clock=lambda: BASE,
        **kwargs,
    )


def test_line_buffer_reassembles_fragments():
    buffer = LineBuffer()
    assert buffer.feed(b"ab") == []
    assert buffer.pending == b"ab"
    assert buffer.feed(b"c\nd\n") == ["abc", "d"]
    assert buffer.pending == b""


def test_line_buffer_keeps_split_multibyte_characters():
    buffer = LineBuffer()
    assert buffer.feed("café".encode()[:-1]) == []
    assert buffer.feed(b"\xa9\r\n") == ["café"]


def test_line_buffer_discards_an_oversized_line():
    buffer = LineBuffer(max_line=8)
    assert buffer.feed(b"x" * 10) == []
    assert buffer.pending == b""
    assert buffer.feed(b"x" * 10) == []
    assert buffer.feed(b"yy\nok\n") == ["ok"]
    assert buffer.dropped == 1

    assert buffer.feed(b"keep\n" + b"z" * 20) == ["keep"]
    assert buffer.pending == b""
    assert buffer.feed(b"zz\nnext\n") == ["next"]
    assert buffer.dropped == 2


@pytest.mark.asyncio
async def test_stream_skips_a_line_without_terminator_past_the_cap():
    lines = []

    async def spawn(*_argv, **_kwargs):
        stream.terminate()
        return DummyProcess([b"a" * (DEFAULT_MAX_LINE_BYTES + 1), b"aaa\nafter\n"], code=0)

    stream = SupervisedStream(
        LogSource("tailer", ["tailer"]),
        lambda _src, line: lines.append(line),
        lambda _src, _text: None,
        restart_delay=0,
        spawn=spawn,
    )
    await asyncio.wait_for(stream.run(), timeout=2)

    assert lines == ["after"]


def test_default_sources():
    sources = default_sources("/opt/kumomta/sbin/tailer", "/var/log/kumomta", "kumomta")
    assert sources[0] == LogSource("tailer", ["/opt/kumomta/sbin/tailer", "--tail", "/var/log/kumomta"])
    assert sources[1].name == "journal"
    assert sources[1].argv[:3] == ["journalctl", "-u", "kumomta"]
    assert sources[1].argv[-2:] == ["-o", "json"]
    assert default_sources(None, None) == []


@pytest.mark.asyncio
async def test_stream_restarts_after_exit_and_stops_cleanly():
    lines, notices = [], []
    spawned = []

    async def spawn(*argv, **_kwargs):
        spawned.append(argv)
        if len(spawned) == 1:
            return DummyProcess([b"first line\nsecond ", b"half\n"], [b"boom\n"], code=1)
        stream.terminate()
        return DummyProcess([b"last\n"], code=0)

    stream = SupervisedStream(
        LogSource("tailer", ["tailer", "--tail", "/logs"]),
        lambda _src, line: lines.append(line),
        lambda _src, text: notices.append(text),
        restart_delay=0,
        spawn=spawn,
    )
    await asyncio.wait_for(stream.run(), timeout=2)

    assert spawned[0] == ("tailer", "--tail", "/logs")
    assert lines == ["first line", "second half", "last"]
    assert notices == ["boom", "exited with code 1, retrying…"]
    assert stream.restarts == 1
    assert stream.state is StreamState.STOPPED


@pytest.mark.asyncio
async def test_stream_retries_when_spawn_fails():
    notices = []
    calls = 0

    async def spawn(*_argv, **_kwargs):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise FileNotFoundError("no tailer")
        stream.terminate()
        return DummyProcess(code=0)

    class DummyMetrics:
        def __init__(self):
            self.restarts = []

        def inc_restart(self, source):
            self.restarts.append(source)

    metrics = DummyMetrics()
    stream = SupervisedStream(
        LogSource("journal", ["journalctl"]),
        lambda *_: None,
        lambda _src, text: notices.append(text),
        restart_delay=0,
        spawn=spawn,
        metrics=metrics,
    )
    await asyncio.wait_for(stream.run(), timeout=2)

    assert notices[0].startswith("failed to start: no tailer")
    assert metrics.restarts == ["journal"]
    assert calls == 2


def test_handle_line_records_deferral_last_error_and_events():
    watcher = make_watcher()
    line = '{"event":"TransientFailure","domain":"example.com","response":{"code":450,"text":"try again"}}'
    watcher.handle_line("tailer", line)

    assert [(e.t, e.domain) for e in watcher.deferrals.events] == [(BASE, "example.com")]
    rows = watcher.last_errors.rows("example.com")
    assert len(rows) == 1
    assert rows[0]["code"] == 450
    assert rows[0]["text"] == "try again"
    assert [e["msg"] for e in watcher.events.tail()] == ["TransientFailure", "DEFERRAL example.com 450 try again"]


def test_handle_line_ignores_plain_lines_for_ledgers():
    watcher = make_watcher()
    watcher.handle_line("tailer", "INFO accepted message from client")
    watcher.handle_line("tailer", "")

    assert len(watcher.deferrals) == 0
    assert watcher.last_errors.all_rows() == {}
    assert [e["level"] for e in watcher.events.tail()] == ["INFO"]


def test_handle_notice_is_prefixed_with_source():
    watcher = make_watcher()
    watcher.handle_notice("journal", "exited with code 1, retrying…")
    assert watcher.events.tail()[0]["msg"] == "journal: exited with code 1, retrying…"


@pytest.mark.asyncio
async def test_watcher_start_and_stop_terminates_processes():
    procs = []

    async def spawn(*_argv, **_kwargs):
        proc = DummyProcess(block=True)
        procs.append(proc)
        return proc

    watcher = make_watcher(sources=[LogSource("tailer", ["tailer"])], spawn=spawn, restart_delay=0)
    await watcher.start()
    await asyncio.sleep(0.01)
    assert watcher.streams[0].state is StreamState.STREAMING

    await watcher.stop()
    assert procs[0].terminated
    assert len(procs) == 1

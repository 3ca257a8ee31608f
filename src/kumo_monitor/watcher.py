# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Supervised log-follow subprocesses feeding the deferral ledgers.

Each configured source (KumoMTA's ``tailer``, ``journalctl -f``...) runs in
its own :class:`SupervisedStream`, which walks the cycle::

    starting -> streaming -> closed -> restarting -> starting ...

A source that exits or cannot be spawned is restarted after a fixed delay;
other sources are unaffected. Complete lines are handed to
:class:`LogTailWatcher`, which classifies them and updates the ledgers.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .classifier import Classification, classify_line
from .clock import now_ms
from .ledger import DeferralLedger, LastError, LastErrorLedger, RecentEvents
from .logger import get_logger

DEFAULT_RESTART_DELAY = 2.0
DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_MAX_LINE_BYTES = 1024 * 1024

LineHandler = Callable[[str, str], Any]
SpawnCallable = Callable[..., Awaitable[Any]]


class StreamState(str, enum.Enum):
    STARTING = "starting"
    STREAMING = "streaming"
    CLOSED = "closed"
    RESTARTING = "restarting"
    STOPPED = "stopped"


@dataclass
class LogSource:
    """A named command whose stdout is followed line by line."""

    name: str
    argv: list[str] = field(default_factory=list)


def default_sources(
    tailer: str | None,
    log_dir: str | None,
    journal_unit: str | None = None,
) -> list[LogSource]:
    """KumoMTA tailer over the log directory, plus journald when a unit is given."""
    sources = []
    if tailer and log_dir:
        sources.append(LogSource("tailer", [tailer, "--tail", log_dir]))
    if journal_unit:
        sources.append(LogSource("journal", ["journalctl", "-u", journal_unit, "-f", "-n", "0", "-o", "json"]))
    return sources


class LineBuffer:
    """Reassemble newline-terminated lines from arbitrary byte chunks.

    An unterminated trailing fragment is held back and prefixed to the
    next chunk. Splitting happens on bytes so a multi-byte character cut
    between two chunks decodes correctly. A fragment longer than
    ``max_line`` is discarded together with the rest of its line.
    """

    def __init__(self, max_line: int = DEFAULT_MAX_LINE_BYTES) -> None:
        self.max_line = max_line
        self.dropped = 0
        self._pending = b""
        self._discarding = False

    @property
    def pending(self) -> bytes:
        return self._pending

    def feed(self, chunk: bytes) -> list[str]:
        data = self._pending + chunk
        if self._discarding:
            end = data.find(b"\n")
            if end < 0:
                self._pending = b""
                return []
            data = data[end + 1 :]
            self._discarding = False
        *complete, pending = data.split(b"\n")
        if len(pending) > self.max_line:
            self.dropped += 1
            self._discarding = True
            pending = b""
        self._pending = pending
        return [raw.decode("utf-8", errors="replace").rstrip("\r") for raw in complete]


class SupervisedStream:
    """Keep one follow subprocess alive with a fixed-backoff restart policy."""

    def __init__(
        self,
        source: LogSource,
        on_line: LineHandler,
        on_notice: LineHandler,
        *,
        restart_delay: float = DEFAULT_RESTART_DELAY,
        spawn: SpawnCallable | None = None,
        metrics=None,
        logger=None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.source = source
        self.state = StreamState.STOPPED
        self.restarts = 0
        self._on_line = on_line
        self._on_notice = on_notice
        self._restart_delay = max(0.0, float(restart_delay))
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._metrics = metrics
        self._chunk_size = chunk_size
        self._stopping = False
        self._proc: Any = None
        self.logger = logger or get_logger("KumoMonitor.watcher")

    async def run(self) -> None:
        """Run until :meth:`terminate` is called."""
        self._stopping = False
        while not self._stopping:
            self.state = StreamState.STARTING
            try:
                self._proc = await self._spawn(
                    *self.source.argv,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as exc:
                self.logger.warning("Cannot start %s (%s): %s", self.source.name, " ".join(self.source.argv), exc)
                self._notice(f"failed to start: {exc}, retrying…")
            else:
                self.state = StreamState.STREAMING
                self.logger.info("Following %s (pid %s)", self.source.name, getattr(self._proc, "pid", "?"))
                try:
                    await self._pump(self._proc)
                    code = await self._proc.wait()
                except Exception:  # pragma: no cover - defensive
                    self.logger.exception("Stream %s failed while reading", self.source.name)
                    code = getattr(self._proc, "returncode", None)
                if not self._stopping:
                    self._notice(f"exited with code {code}, retrying…")
            self.state = StreamState.CLOSED
            if self._stopping:
                break
            self.state = StreamState.RESTARTING
            self.restarts += 1
            if self._metrics is not None:
                self._metrics.inc_restart(self.source.name)
            await asyncio.sleep(self._restart_delay)
        self.state = StreamState.STOPPED

    async def _pump(self, proc: Any) -> None:
        readers = [self._read_stdout(proc.stdout)]
        if getattr(proc, "stderr", None) is not None:
            readers.append(self._read_stderr(proc.stderr))
        await asyncio.gather(*readers)

    async def _read_stdout(self, stream: asyncio.StreamReader) -> None:
        buffer = LineBuffer()
        while True:
            chunk = await stream.read(self._chunk_size)
            if not chunk:
                return
            dropped = buffer.dropped
            for line in buffer.feed(chunk):
                self._dispatch(self._on_line, line)
            if buffer.dropped != dropped:
                self.logger.warning("Discarded a line longer than %d bytes from %s", buffer.max_line, self.source.name)

    async def _read_stderr(self, stream: asyncio.StreamReader) -> None:
        buffer = LineBuffer()
        while True:
            chunk = await stream.read(self._chunk_size)
            if not chunk:
                return
            for line in buffer.feed(chunk):
                if line.strip():
                    self._notice(line.strip())

    def _notice(self, text: str) -> None:
        self._dispatch(self._on_notice, text)

    def _dispatch(self, handler: LineHandler, line: str) -> None:
        try:
            handler(self.source.name, line)
        except Exception:  # pragma: no cover - defensive
            self.logger.exception("Failed to handle line from %s", self.source.name)

    def terminate(self) -> None:
        """Stop restarting and signal the running subprocess; does not wait."""
        self._stopping = True
        proc = self._proc
        if proc is not None and getattr(proc, "returncode", None) is None:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass


class LogTailWatcher:
    """Classify followed log lines into deferrals, last errors and recent events."""

    def __init__(
        self,
        sources: Sequence[LogSource],
        deferrals: DeferralLedger,
        last_errors: LastErrorLedger,
        events: RecentEvents,
        *,
        restart_delay: float = DEFAULT_RESTART_DELAY,
        spawn: SpawnCallable | None = None,
        metrics=None,
        logger=None,
        clock: Callable[[], int] = now_ms,
    ):
        self.deferrals = deferrals
        self.last_errors = last_errors
        self.events = events
        self.metrics = metrics
        self.logger = logger or get_logger("KumoMonitor.watcher")
        self._clock = clock
        self.streams = [
            SupervisedStream(
                source,
                self.handle_line,
                self.handle_notice,
                restart_delay=restart_delay,
                spawn=spawn,
                metrics=metrics,
                logger=self.logger,
            )
            for source in sources
        ]
        self._tasks: list[asyncio.Task] = []

    def handle_line(self, source: str, line: str) -> Classification | None:
        """Classify one complete line and update every ledger it concerns."""
        result = classify_line(line)
        if result is None:
            return None
        now = self._clock()
        if self.metrics is not None:
            self.metrics.inc_log_line(source)
        self.events.record(result.display, now)
        if not result.is_deferral:
            return result
        self.deferrals.record(result.domain, now)
        if self.metrics is not None:
            self.metrics.inc_deferral()
        failure = result.failure
        if failure is not None:
            self.events.record(result.deferral_summary(), now)
            self.last_errors.push(
                LastError(
                    ts=now,
                    domain=failure.domain,
                    text=failure.text,
                    provider=failure.provider,
                    code=failure.code,
                    enhanced=failure.enhanced,
                ),
                now,
            )
        return result

    def handle_notice(self, source: str, text: str) -> None:
        """Record supervisor and stderr output as a recent event."""
        self.events.record(f"{source}: {text}", self._clock())

    async def start(self) -> None:
        for stream in self.streams:
            self._tasks.append(asyncio.create_task(stream.run(), name=f"log-tail-{stream.source.name}"))

    async def stop(self) -> None:
        for stream in self.streams:
            stream.terminate()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

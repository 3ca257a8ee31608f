# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Single-file JSON persistence for samples, peaks and deferral events.

The state file looks like::

    {
      "samples": [{"t": 1700000000000, "received": 10, ...}],
      "qSamples": [{"t": 1700000000000, "depth": 3, "ready": 1, "scheduled": 2}],
      "peaks": {"minute": {...}, "hour": {...}},
      "deferralEvents": [{"t": 1700000000000, "domain": "example.com"}],
      "savedAt": 1700000000000
    }

Last errors and recent events are deliberately left out: they are rebuilt
from the live log stream. Loading never fails; a missing, unreadable or
malformed file means a cold start, and every retention rule is re-applied
so a stale file cannot bring expired data back.
"""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from .clock import now_ms
from .ledger import DeferralLedger
from .logger import get_logger
from .samples import SampleStore
from .windows import Peaks

DEFAULT_STATE_PATH = "/opt/kumo-ui-api/state.json"
DEFAULT_SAVE_INTERVAL = 10.0
DEFAULT_FLUSH_TIMEOUT = 5.0


def _list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def write_atomic(path: Path, text: str) -> None:
    """Write ``text`` next to ``path`` then rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


class PersistenceManager:
    """Save and restore the persisted subset of the monitor state.

    The manager only reads the live stores when saving; it writes into them
    exclusively from :meth:`load`, which runs once at boot.
    """

    def __init__(
        self,
        path: str | os.PathLike[str],
        store: SampleStore,
        peaks: Peaks,
        deferrals: DeferralLedger,
        *,
        logger=None,
        metrics=None,
        clock: Callable[[], int] = now_ms,
    ):
        self.path = Path(path)
        self.store = store
        self.peaks = peaks
        self.deferrals = deferrals
        self.logger = logger or get_logger("KumoMonitor.persistence")
        self.metrics = metrics
        self._clock = clock

    def snapshot(self) -> dict[str, Any]:
        """Serializable copy of the persisted state."""
        return {
            "samples": [s.to_dict() for s in self.store.samples],
            "qSamples": [q.to_dict() for q in self.store.queue],
            "peaks": self.peaks.to_dict(),
            "deferralEvents": [e.to_dict() for e in self.deferrals.events],
            "savedAt": self._clock(),
        }

    async def save(self) -> None:
        """Write the state file; raises on I/O failure."""
        # Serialize on the loop so the worker thread never sees live structures.
        text = json.dumps(self.snapshot(), separators=(",", ":"))
        await asyncio.to_thread(write_atomic, self.path, text)
        if self.metrics is not None:
            self.metrics.inc_save("ok")

    async def save_quietly(self) -> bool:
        """Periodic save: failures are logged and reported as ``False``."""
        try:
            await self.save()
        except (OSError, TypeError, ValueError) as exc:
            self.logger.warning("Failed to save state to %s: %s", self.path, exc)
            if self.metrics is not None:
                self.metrics.inc_save("failed")
            return False
        return True

    async def flush(self, timeout: float = DEFAULT_FLUSH_TIMEOUT) -> bool:
        """Final save on shutdown, bounded by ``timeout`` seconds."""
        try:
            await asyncio.wait_for(self.save(), timeout=timeout)
        except asyncio.TimeoutError:
            self.logger.error("Timed out after %.1fs writing final state to %s", timeout, self.path)
        except (OSError, TypeError, ValueError) as exc:
            self.logger.error("Failed to write final state to %s: %s", self.path, exc)
        else:
            self.logger.info("State saved to %s", self.path)
            return True
        if self.metrics is not None:
            self.metrics.inc_save("failed")
        return False

    async def load(self) -> bool:
        """Restore persisted state into the live stores; False on cold start."""
        try:
            raw = await asyncio.to_thread(self.path.read_bytes)
        except FileNotFoundError:
            self.logger.info("No state file at %s, starting cold", self.path)
            return False
        except OSError as exc:
            self.logger.warning("Cannot read state file %s (%s), starting cold", self.path, exc)
            return False
        try:
            state = json.loads(raw.decode("utf-8"))
        except (ValueError, RecursionError) as exc:
            self.logger.warning("Malformed state file %s (%s), starting cold", self.path, exc)
            return False
        if not isinstance(state, Mapping):
            self.logger.warning("Unexpected state file shape in %s, starting cold", self.path)
            return False
        self.restore(state)
        return True

    def restore(self, state: Mapping[str, Any]) -> None:
        now = self._clock()
        self.store.restore(_list(state.get("samples")), _list(state.get("qSamples")), now)
        restored = Peaks.from_dict(state.get("peaks"))
        self.peaks.minute = restored.minute
        self.peaks.hour = restored.hour
        self.deferrals.restore(_list(state.get("deferralEvents")), now)
        self.logger.info(
            "Restored %d samples, %d queue snapshots, %d deferral events",
            len(self.store.samples),
            len(self.store.queue),
            len(self.deferrals.events),
        )


def read_state(path: str | os.PathLike[str], *, sample_retention_ms: int, deferral_retention_ms: int) -> dict[str, Any]:
    """Load a state file outside the service, retention applied; raises on bad input."""
    store = SampleStore(sample_retention_ms)
    peaks = Peaks()
    deferrals = DeferralLedger(deferral_retention_ms)
    manager = PersistenceManager(path, store, peaks, deferrals)
    try:
        state = json.loads(Path(path).read_bytes().decode("utf-8"))
    except RecursionError as exc:
        raise ValueError(f"state file {path} is nested too deeply") from exc
    if not isinstance(state, Mapping):
        raise ValueError(f"unexpected state file shape in {path}")
    manager.restore(state)
    snapshot = manager.snapshot()
    snapshot["savedAt"] = state.get("savedAt")
    return snapshot

# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Millisecond wall-clock helpers shared by every store."""

import time
from datetime import datetime

MINUTE_MS = 60_000
HOUR_MS = 3_600_000


def now_ms() -> int:
    """Return the current epoch time in integer milliseconds."""
    return int(time.time() * 1000)


def format_clock(t: int) -> str:
    """Render an epoch-millisecond timestamp as local ``HH:MM:SS``."""
    return datetime.fromtimestamp(t / 1000).strftime("%H:%M:%S")

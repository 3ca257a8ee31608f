# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Telemetry pipeline in front of a KumoMTA mail transfer agent.

Features:
    - Periodic sampling of KumoMTA ``metrics.json`` cumulative counters
    - Last-minute / last-hour windows with all-time peaks
    - Per-minute rate and queue-depth series for charts
    - Supervised log tailing with per-domain deferral extraction
    - Bounded, time-decayed deferral, last-error and recent-event ledgers
    - JSON state file surviving restarts
    - FastAPI query API and Prometheus self-metrics

Example::

    from kumo_monitor import MonitorService
    from kumo_monitor.api import create_app

    monitor = MonitorService(kumo_url="http://127.0.0.1:8000")
    app = create_app(monitor, api_key="secret")
"""

from .core import MonitorService

__version__ = "0.1.0"

__all__ = ["MonitorService", "__version__"]

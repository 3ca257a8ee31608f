# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Startup configuration for the monitor.

Settings are read from an INI file (default ``config.ini``, overridden by
``KMON_CONFIG``) with ``KMON_*`` environment variables as fallbacks. They
are fixed for the life of the process.

Environment variables:
  KMON_CONFIG - Path to config.ini file (default: config.ini)
  KMON_LOG_LEVEL - Logging level (default: INFO)
  KMON_KUMO_HTTP - KumoMTA HTTP listener (default: http://127.0.0.1:8000)
  KMON_POLL_INTERVAL - Seconds between metrics polls (default: 3)
  KMON_SAMPLE_RETENTION - Seconds of samples kept (default: 7200)
  KMON_SERIES_LIMIT - Points per chart series (default: 120)
  KMON_STATE_PATH - State file (default: /opt/kumo-ui-api/state.json)
  KMON_SAVE_INTERVAL - Seconds between state saves (default: 10)
  KMON_DEFERRAL_RETENTION - Seconds of deferral events kept (default: 48h)
  KMON_DEFERRAL_MAX_EVENTS - Deferral event cap (default: 50000)
  KMON_EVENTS_MAX - Recent events ring size (default: 500)
  KMON_LAST_ERRORS_PER_DOMAIN - Failure reasons kept per domain (default: 20)
  KMON_LAST_ERRORS_RETENTION - Seconds failure reasons are kept (default: 48h)
  KMON_TAILER - KumoMTA tailer binary (default: /opt/kumomta/sbin/tailer)
  KMON_LOGDIR - KumoMTA log directory (default: /var/log/kumomta)
  KMON_JOURNAL_UNIT - systemd unit to follow as well (default: disabled)
  KMON_RESTART_DELAY - Seconds before a log source restarts (default: 2)
  KMON_HOST / KMON_PORT - HTTP bind address (default: 0.0.0.0:5055)
  KMON_API_KEY - Value required in the X-API-Key header (default: none)

Config file sections/keys:
  [kumo] url
  [sampling] poll_interval_seconds, retention_seconds, series_limit
  [storage] state_path, save_interval_seconds
  [deferrals] retention_seconds, max_events
  [events] max_events
  [errors] per_domain, retention_seconds
  [logs] tailer, log_dir, journal_unit, restart_delay_seconds
  [server] host, port, api_key
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    """Resolved monitor configuration."""

    kumo_url: str = "http://127.0.0.1:8000"
    """Base URL of the KumoMTA HTTP listener serving ``/metrics.json``."""

    poll_interval: float = 3.0
    """Seconds between metrics polls."""

    sample_retention: int = 2 * 3600
    """Seconds of samples and queue snapshots kept."""

    series_limit: int = 120
    """Points returned per chart series."""

    state_path: str = "/opt/kumo-ui-api/state.json"
    save_interval: float = 10.0

    deferral_retention: int = 48 * 3600
    deferral_max_events: int = 50_000
    events_max: int = 500
    last_errors_per_domain: int = 20
    last_errors_retention: int = 48 * 3600

    tailer: str = "/opt/kumomta/sbin/tailer"
    log_dir: str = "/var/log/kumomta"
    journal_unit: str | None = None
    """When set, ``journalctl -u <unit> -f`` is followed next to the tailer."""

    restart_delay: float = 2.0

    http_host: str = "0.0.0.0"
    http_port: int = 5055
    api_key: str | None = None
    log_level: str = "INFO"


def load_settings(config_path: str | os.PathLike[str] | None = None) -> Settings:
    """Build :class:`Settings` from the INI file and the environment."""
    path = Path(config_path or os.getenv("KMON_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)
    defaults = Settings()

    def get(section: str, option: str, env: str) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return os.getenv(env)

    def get_str(section: str, option: str, env: str, default: str | None) -> str | None:
        value = get(section, option, env)
        if value is None:
            return default
        return value.strip() or None

    def get_int(section: str, option: str, env: str, default: int) -> int:
        value = get(section, option, env)
        return default if value is None or not value.strip() else int(value)

    def get_float(section: str, option: str, env: str, default: float) -> float:
        value = get(section, option, env)
        return default if value is None or not value.strip() else float(value)

    state_path = get_str("storage", "state_path", "KMON_STATE_PATH", defaults.state_path)
    return Settings(
        kumo_url=get_str("kumo", "url", "KMON_KUMO_HTTP", defaults.kumo_url) or defaults.kumo_url,
        poll_interval=get_float("sampling", "poll_interval_seconds", "KMON_POLL_INTERVAL", defaults.poll_interval),
        sample_retention=get_int("sampling", "retention_seconds", "KMON_SAMPLE_RETENTION", defaults.sample_retention),
        series_limit=get_int("sampling", "series_limit", "KMON_SERIES_LIMIT", defaults.series_limit),
        state_path=os.path.expanduser(state_path or defaults.state_path),
        save_interval=get_float("storage", "save_interval_seconds", "KMON_SAVE_INTERVAL", defaults.save_interval),
        deferral_retention=get_int(
            "deferrals", "retention_seconds", "KMON_DEFERRAL_RETENTION", defaults.deferral_retention
        ),
        deferral_max_events=get_int(
            "deferrals", "max_events", "KMON_DEFERRAL_MAX_EVENTS", defaults.deferral_max_events
        ),
        events_max=get_int("events", "max_events", "KMON_EVENTS_MAX", defaults.events_max),
        last_errors_per_domain=get_int(
            "errors", "per_domain", "KMON_LAST_ERRORS_PER_DOMAIN", defaults.last_errors_per_domain
        ),
        last_errors_retention=get_int(
            "errors", "retention_seconds", "KMON_LAST_ERRORS_RETENTION", defaults.last_errors_retention
        ),
        tailer=get_str("logs", "tailer", "KMON_TAILER", defaults.tailer) or "",
        log_dir=get_str("logs", "log_dir", "KMON_LOGDIR", defaults.log_dir) or "",
        journal_unit=get_str("logs", "journal_unit", "KMON_JOURNAL_UNIT", None),
        restart_delay=get_float("logs", "restart_delay_seconds", "KMON_RESTART_DELAY", defaults.restart_delay),
        http_host=get_str("server", "host", "KMON_HOST", defaults.http_host) or defaults.http_host,
        http_port=get_int("server", "port", "KMON_PORT", defaults.http_port),
        api_key=get_str("server", "api_key", "KMON_API_KEY", None),
        log_level=(os.getenv("KMON_LOG_LEVEL") or defaults.log_level).upper(),
    )

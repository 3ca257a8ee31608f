# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Run the KumoMTA monitor under uvicorn.

Configuration is read from ``config.ini`` (or ``KMON_CONFIG``) with ``KMON_*``
environment variables as fallbacks; see :mod:`kumo_monitor.config`.
"""

import uvicorn

from kumo_monitor.config import load_settings
from kumo_monitor.core import MonitorService
from kumo_monitor.logger import configure_logging
from kumo_monitor.server import build_app


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings.log_level)

    # Create the service but don't start it yet - the app lifespan does that on uvicorn's loop
    service = MonitorService.from_settings(settings)
    app = build_app(settings, core=service)

    uvicorn.run(app, host=settings.http_host, port=settings.http_port)

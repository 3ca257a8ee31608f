# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

Usage:
    uvicorn kumo_monitor.server:app --host 0.0.0.0 --port 5055

Configuration comes from :func:`kumo_monitor.config.load_settings`
(``config.ini`` plus ``KMON_*`` environment variables).

Signal handling is delegated to uvicorn: on SIGTERM/SIGINT it runs the
lifespan shutdown, which stops the loops and writes the final state file
before the process exits.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config import Settings, load_settings
from .core import MonitorService
from .logger import get_logger

_logger = get_logger("KumoMonitor.server")


def build_app(settings: Settings, core: MonitorService | None = None) -> FastAPI:
    """Wire a :class:`MonitorService` into an app whose lifespan runs it."""
    core = core or MonitorService.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        _logger.info("Starting KumoMTA monitor...")
        await core.start()
        try:
            yield
        finally:
            _logger.info("Stopping KumoMTA monitor...")
            await core.stop()
            _logger.info("KumoMTA monitor stopped")

    return create_app(core, api_key=settings.api_key, lifespan=lifespan)


_app: FastAPI | None = None


def get_app() -> FastAPI:
    """The app served by ``kumo_monitor.server:app``, built on first use."""
    global _app
    if _app is None:
        _app = build_app(load_settings())
    return _app


def __getattr__(name: str):
    # Importing this module for build_app must not read config or wire a service.
    if name == "app":
        return get_app()
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

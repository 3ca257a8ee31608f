# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory exposing the monitor's query contract.

The routes are thin: each one reads from a :class:`~kumo_monitor.core.MonitorService`
and returns JSON. When an API key is configured every route except
``/health`` requires it in the ``X-API-Key`` header.
"""

from __future__ import annotations

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from typing import Any

import aiohttp
from fastapi import APIRouter, Depends, FastAPI, HTTPException, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from .core import MonitorService
from .logger import get_logger

logger = get_logger("KumoMonitor.api")

app = FastAPI(title="KumoMTA Monitor")
service: MonitorService | None = None
API_KEY_HEADER_NAME = "X-API-Key"
api_key_scheme = APIKeyHeader(name=API_KEY_HEADER_NAME, auto_error=False)
app.state.api_key = None


async def require_key(request_key: str | None = Depends(api_key_scheme)) -> None:
    """Validate the ``X-API-Key`` header when a key has been configured."""
    expected = getattr(app.state, "api_key", None)
    if not expected:
        return
    if request_key != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "unauthorized")


auth_dependency = Depends(require_key)


class HealthStatus(BaseModel):
    """Liveness payload."""

    status: str = "ok"
    started: bool = False


def _service() -> MonitorService:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def create_app(
    svc: MonitorService,
    api_key: str | None = None,
    lifespan: Callable[[FastAPI], AbstractAsyncContextManager[Any]] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`MonitorService` answering every query.
    api_key:
        Optional secret expected in the ``X-API-Key`` header.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    api = FastAPI(title="KumoMTA Monitor", lifespan=lifespan) if lifespan is not None else app
    api.state.api_key = api_key
    app.state.api_key = api_key
    router = APIRouter(prefix="/metrics", tags=["metrics"], dependencies=[auth_dependency])

    @api.get("/health", response_model=HealthStatus)
    async def health():
        """Liveness check (no authentication required)."""
        return HealthStatus(started=bool(service and service.started))

    @router.get("")
    async def raw_metrics():
        """Upstream ``metrics.json`` passed through unchanged."""
        try:
            return await _service().raw_metrics()
        except aiohttp.ClientResponseError as exc:
            raise HTTPException(status.HTTP_502_BAD_GATEWAY, f"upstream_error: HTTP {exc.status}")
        except (aiohttp.ClientError, TimeoutError, ValueError) as exc:
            logger.warning("Raw metrics fetch failed: %s", exc)
            raise HTTPException(status.HTTP_502_BAD_GATEWAY, f"fetch_failed: {exc}")

    @router.get("/summary")
    async def summary():
        """Totals, windows, peaks, series, rankings and recent events."""
        return _service().summary()

    @router.get("/last-errors")
    async def last_errors(domain: str = "", limit: int = 10):
        """Recent failure reasons, newest first, for one domain or every domain."""
        return _service().last_errors(domain or None, limit)

    @router.get("/prometheus")
    async def prometheus():
        """The monitor's own counters in Prometheus text format."""
        return Response(content=_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(router)
    return api

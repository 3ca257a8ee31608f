# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Transport helper to pull the KumoMTA metrics snapshot.

Example:
    Polling the local KumoMTA listener::

        fetcher = MetricsFetcher("http://127.0.0.1:8000")
        document = await fetcher.fetch()

    Using a custom callable for testing::

        async def fake():
            return {"total_messages_delivered": {"value": 10}}

        fetcher = MetricsFetcher(fetch_callable=fake)
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

JsonDict = dict[str, Any]
FetchCallable = Callable[[], Awaitable[JsonDict]]

METRICS_PATH = "metrics.json"
DEFAULT_TIMEOUT = 10.0


class MetricsFetcher:
    """Retrieve ``/metrics.json`` from KumoMTA.

    Attributes:
        base_url: KumoMTA HTTP listener, e.g. ``http://127.0.0.1:8000``.
        fetch_callable: Optional async callable replacing the HTTP request.
    """

    def __init__(
        self,
        base_url: str | None = None,
        fetch_callable: FetchCallable | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url
        self.fetch_callable = fetch_callable
        self.timeout = timeout

    def _endpoint(self, suffix: str) -> str | None:
        """Build the full URL for the given suffix."""
        if not self.base_url:
            return None
        base = self.base_url.rstrip("/")
        return f"{base}/{suffix.lstrip('/')}"

    async def fetch(self) -> JsonDict:
        """Return the current metrics document.

        Raises:
            aiohttp.ClientError: On connection failure or a non-2xx status.
            asyncio.TimeoutError: When KumoMTA does not answer in time.
            ValueError: When the body is not valid JSON.
        """
        if self.fetch_callable is not None:
            return await self.fetch_callable()
        endpoint = self._endpoint(METRICS_PATH)
        if not endpoint:
            return {}
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(endpoint) as resp:
                resp.raise_for_status()
                data = await resp.json(content_type=None)
                return data if isinstance(data, dict) else {}

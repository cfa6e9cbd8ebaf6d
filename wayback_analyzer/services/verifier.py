from __future__ import annotations

import asyncio
import logging
from typing import Callable

import httpx

from wayback_analyzer.models import CollectorConfig
from wayback_analyzer.utils import is_valid_url

logger = logging.getLogger(__name__)

UNREACHABLE_STATUS = 404


class StatusVerifier:
    """Live HEAD check per URL, in small concurrent batches with a pause between them."""

    def __init__(self, config: CollectorConfig, client: httpx.AsyncClient | None = None, sleep=asyncio.sleep):
        self.config = config
        self._client = client
        self._sleep = sleep

    async def check(self, client: httpx.AsyncClient, url: str) -> int:
        status, _ = await self._head(client, url)
        return status

    async def _head(self, client: httpx.AsyncClient, url: str) -> tuple[int, str | None]:
        if not is_valid_url(url):
            return UNREACHABLE_STATUS, f"Invalid URL: {url}"
        try:
            res = await client.head(url)
            return res.status_code, None
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.debug("Status check failed for %s: %s", url, exc)
            return UNREACHABLE_STATUS, str(exc) or type(exc).__name__

    async def check_url(self, url: str) -> tuple[int, str | None]:
        """Single check; returns the status and, when unreachable, why."""
        if self._client is not None:
            return await self._head(self._client, url)
        async with httpx.AsyncClient(timeout=self.config.timeout_ms / 1000, follow_redirects=True) as client:
            return await self._head(client, url)

    async def verify(self, urls: list[str], on_batch: Callable[[int, int], None] | None = None) -> dict[str, int]:
        if self._client is not None:
            return await self._verify(self._client, urls, on_batch)
        async with httpx.AsyncClient(timeout=self.config.timeout_ms / 1000, follow_redirects=True) as client:
            return await self._verify(client, urls, on_batch)

    async def _verify(self, client, urls, on_batch) -> dict[str, int]:
        statuses: dict[str, int] = {}
        size = max(1, self.config.batch_size)
        for start in range(0, len(urls), size):
            batch = urls[start:start + size]
            results = await asyncio.gather(*(self.check(client, url) for url in batch))
            statuses.update(zip(batch, results))
            if on_batch:
                on_batch(len(statuses), len(urls))
            if start + size < len(urls):
                await self._sleep(self.config.batch_delay_ms / 1000)
        return statuses

"""
Paginated collector: pages through the CDX index for a domain, dedups,
filters invalid URLs and classifies what is left.

  1. page sources: direct/proxied CDX query, or a deployed relay endpoint
  2. progress:     monotonic value observable while a run is in flight
  3. collector:    the pagination loop itself
"""
from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Callable, Protocol
from urllib.parse import urlencode

from wayback_analyzer.classifier import classify
from wayback_analyzer.config import settings
from wayback_analyzer.errors import (
    AllRelaysFailedError,
    CollectionError,
    UpstreamError,
    ValidationError,
    WaybackError,
)
from wayback_analyzer.models import ArchivedUrlRecord, CollectorConfig
from wayback_analyzer.services.fetcher import RetryingFetcher
from wayback_analyzer.services.verifier import StatusVerifier
from wayback_analyzer.utils import is_valid_url, normalize_domain

logger = logging.getLogger(__name__)

DEFAULT_STATUS = 200
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
# past the first page an empty body usually means the index ran out
TAIL_PAGE_RETRIES = 1


def build_cdx_url(domain: str, offset: int = 0, limit: int = 50, endpoint: str | None = None) -> str:
    query = urlencode({
        "url": f"*.{domain}/*",
        "output": "text",
        "fl": "original",
        "collapse": "urlkey",
        "offset": offset,
        "limit": limit,
    }, safe="*/")
    return f"{endpoint or settings.cdx_endpoint}?{query}"


def parse_lines(text: str) -> list[str]:
    return [line.strip() for line in text.splitlines() if line.strip()]


# ── Page sources ─────────────────────────────────────────────────────────────

class PageSource(Protocol):
    async def fetch_page(self, domain: str, offset: int, limit: int) -> list[str]: ...


class CdxPageSource:
    def __init__(self, fetcher: RetryingFetcher, endpoint: str | None = None):
        self.fetcher = fetcher
        self.endpoint = endpoint

    async def fetch_page(self, domain: str, offset: int, limit: int) -> list[str]:
        url = build_cdx_url(domain, offset, limit, self.endpoint)
        retries = None if offset == 0 else min(TAIL_PAGE_RETRIES, self.fetcher.config.max_retries)
        try:
            response = await self.fetcher.fetch(url, retries=retries)
        except AllRelaysFailedError as exc:
            # CDX answers past the last page with an empty body
            if exc.empty_only:
                return []
            raise
        return parse_lines(response.text)


class RelayPageSource:
    def __init__(self, fetcher: RetryingFetcher, relay_url: str):
        self.fetcher = fetcher
        self.relay_url = relay_url

    async def fetch_page(self, domain: str, offset: int, limit: int) -> list[str]:
        response = await self.fetcher.post_json(
            self.relay_url, {"domain": domain, "offset": offset, "limit": limit}
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError(f"Relay returned invalid JSON: {exc}", status=response.status_code) from exc
        if not isinstance(payload, dict):
            raise UpstreamError("Relay returned an unexpected payload", status=response.status_code)
        urls = payload.get("urls", [])
        if not isinstance(urls, list):
            raise UpstreamError("Relay returned no URL list", status=response.status_code)
        return [u.strip() for u in urls if isinstance(u, str) and u.strip()]


def build_page_source(fetcher: RetryingFetcher, relay_url: str = "") -> PageSource:
    if relay_url:
        return RelayPageSource(fetcher, relay_url)
    return CdxPageSource(fetcher)


# ── Progress ─────────────────────────────────────────────────────────────────

class ProgressTracker:
    """Current progress of one run; never decreases, ends at 100."""

    def __init__(self, on_progress: Callable[[float], None] | None = None):
        self.value = 0.0
        self.history: list[float] = []
        self._on_progress = on_progress

    def update(self, percent: float) -> None:
        percent = max(self.value, min(float(percent), 100.0))
        if self.history and percent == self.value:
            return
        self.value = percent
        self.history.append(percent)
        if self._on_progress:
            self._on_progress(percent)

    def finish(self) -> None:
        self.update(100.0)

    @property
    def done(self) -> bool:
        return self.value >= 100.0


# ── Collector ────────────────────────────────────────────────────────────────

class PaginatedCollector:
    def __init__(
        self,
        config: CollectorConfig,
        source: PageSource | None = None,
        verifier: StatusVerifier | None = None,
    ):
        self.config = config
        self.source = source or CdxPageSource(RetryingFetcher(config))
        self.verifier = verifier

    @property
    def verifies(self) -> bool:
        return self.config.verify_status and self.verifier is not None

    async def collect(
        self,
        domain: str,
        on_progress: Callable[[float], None] | None = None,
        progress: ProgressTracker | None = None,
    ) -> list[ArchivedUrlRecord]:
        domain = normalize_domain(domain)
        if not domain:
            raise ValidationError("Please enter a domain name.")

        progress = progress or ProgressTracker(on_progress)
        progress.update(0)

        urls = await self._gather(domain, progress)
        valid = [u for u in urls if is_valid_url(u)]
        if len(valid) != len(urls):
            logger.info("Dropped %s invalid URLs for %s", len(urls) - len(valid), domain)

        statuses: dict[str, int] = {}
        if valid and self.verifies:
            def on_batch(done: int, total: int) -> None:
                progress.update(40 + 50 * done / total)

            statuses = await self.verifier.verify(valid, on_batch)

        timestamp = datetime.now(UTC).strftime(TIMESTAMP_FORMAT)
        records = [
            ArchivedUrlRecord(
                timestamp=timestamp,
                status=statuses.get(url, DEFAULT_STATUS),
                url=url,
                content_type=classify(url),
            )
            for url in valid
        ]

        progress.finish()
        logger.info("Collected %s URLs for %s", len(records), domain)
        return records

    async def _gather(self, domain: str, progress: ProgressTracker) -> list[str]:
        cfg = self.config
        band = 40.0 if self.verifies else 90.0
        accumulated: dict[str, None] = {}
        offset = 0
        empty_streak = 0

        while empty_streak < cfg.empty_page_limit and len(accumulated) < cfg.max_urls:
            try:
                page = await self.source.fetch_page(domain, offset, cfg.page_size)
            except WaybackError as exc:
                if accumulated:
                    logger.warning(
                        "Stopping %s at offset %s with %s URLs collected: %s",
                        domain, offset, len(accumulated), exc,
                    )
                    break
                logger.error("First page failed for %s at offset %s: %s", domain, offset, exc)
                raise CollectionError(
                    f"Failed to fetch URLs from Wayback Machine for {domain}. Please try again later."
                ) from exc

            before = len(accumulated)
            for url in page:
                accumulated.setdefault(url)
            added = len(accumulated) - before
            empty_streak = 0 if added else empty_streak + 1
            logger.info("%s offset=%s: %s URLs, %s new", domain, offset, len(page), added)

            progress.update(band * min(len(accumulated), cfg.max_urls) / cfg.max_urls)
            offset += cfg.page_size

        return list(accumulated)[:cfg.max_urls]

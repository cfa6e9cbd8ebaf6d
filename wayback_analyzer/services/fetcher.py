"""
Retrying fetcher: GET with timeout, exponential backoff and round-robin
routing through the configured relay templates.
"""
from __future__ import annotations

import asyncio
import logging
from urllib.parse import quote

import httpx

from wayback_analyzer.errors import (
    AllRelaysFailedError,
    FetchError,
    FetchTimeoutError,
    ResponseTooLargeError,
    UpstreamError,
)
from wayback_analyzer.models import CollectorConfig

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "WaybackArchiveBot/1.0",
    "Accept": "text/plain",
}
STREAM_HEADERS = {"content-encoding", "content-length", "transfer-encoding"}


class _Attempt(Exception):
    """One failed attempt; ``kind`` is ``timeout``, ``http``, ``network`` or ``empty``."""

    def __init__(self, kind: str, message: str, status: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.status = status


def relay_url(template: str, target_url: str) -> str:
    if template == "{url}":
        return target_url
    return template.replace("{url}", quote(target_url, safe=""))


class RetryingFetcher:
    def __init__(self, config: CollectorConfig, client: httpx.AsyncClient | None = None, sleep=asyncio.sleep):
        self.config = config
        self.relays = list(config.relays) or ["{url}"]
        self._client = client
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt ``attempt`` (0-based)."""
        delay_ms = min(self.config.base_delay_ms * (2 ** attempt), self.config.max_delay_ms)
        return delay_ms / 1000

    async def fetch(self, target_url: str, allow_empty: bool = False, retries: int | None = None) -> httpx.Response:
        async def send(client: httpx.AsyncClient, attempt: int) -> httpx.Response:
            template = self.relays[attempt % len(self.relays)]
            url = relay_url(template, target_url)
            logger.debug("Attempt %s for %s via %s", attempt + 1, target_url, template)
            return await client.send(client.build_request("GET", url), stream=True)

        return await self._with_retry(send, target_url, allow_empty, retries)

    async def post_json(self, url: str, payload: dict) -> httpx.Response:
        async def send(client: httpx.AsyncClient, attempt: int) -> httpx.Response:
            request = client.build_request("POST", url, json=payload, headers={"Accept": "application/json"})
            return await client.send(request, stream=True)

        return await self._with_retry(send, url, allow_empty=False)

    async def _with_retry(self, send, label: str, allow_empty: bool, retries: int | None = None) -> httpx.Response:
        attempts = 1 + max(0, self.config.max_retries if retries is None else retries)
        failures: list[_Attempt] = []

        if self._client is not None:
            return await self._loop(self._client, send, label, allow_empty, attempts, failures)
        async with httpx.AsyncClient(
            timeout=self.config.timeout_ms / 1000,
            follow_redirects=True,
            headers=DEFAULT_HEADERS,
        ) as client:
            return await self._loop(client, send, label, allow_empty, attempts, failures)

    async def _loop(self, client, send, label, allow_empty, attempts, failures) -> httpx.Response:
        for attempt in range(attempts):
            try:
                response = await send(client, attempt)
                try:
                    self._check_head(response)
                    body = await self._read_capped(response)
                finally:
                    await response.aclose()
                self._check_body(body, allow_empty)
                return body
            except _Attempt as exc:
                failures.append(exc)
            except httpx.TimeoutException as exc:
                failures.append(_Attempt("timeout", f"Request timed out: {exc}"))
            except httpx.HTTPError as exc:
                failures.append(_Attempt("network", f"{type(exc).__name__}: {exc}"))

            logger.warning("Fetch attempt %s/%s failed for %s: %s", attempt + 1, attempts, label, failures[-1])
            if attempt < attempts - 1:
                await self._sleep(self.backoff_delay(attempt))

        raise self._terminal(label, failures)

    def _check_head(self, response: httpx.Response) -> None:
        """Status and declared size, before any of the body is read."""
        if not response.is_success:
            raise _Attempt("http", f"HTTP error! status: {response.status_code}", response.status_code)

        length = response.headers.get("content-length")
        if length and length.isdigit() and int(length) > self.config.max_response_bytes:
            raise ResponseTooLargeError("Response too large. Please try a more specific domain.")

    async def _read_capped(self, response: httpx.Response) -> httpx.Response:
        """Reads the body chunk by chunk and stops as soon as it passes the cap."""
        chunks: list[bytes] = []
        size = 0
        async for chunk in response.aiter_bytes():
            size += len(chunk)
            if size > self.config.max_response_bytes:
                raise ResponseTooLargeError("Response too large. Please try a more specific domain.")
            chunks.append(chunk)
        # the body is already decoded
        headers = [(k, v) for k, v in response.headers.multi_items() if k.lower() not in STREAM_HEADERS]
        return httpx.Response(
            response.status_code, headers=headers, content=b"".join(chunks), request=response.request
        )

    def _check_body(self, response: httpx.Response, allow_empty: bool) -> None:
        if not allow_empty and not response.content.strip():
            raise _Attempt("empty", "Empty response body")

    def _terminal(self, label: str, failures: list[_Attempt]) -> FetchError:
        attempts = len(failures)
        last = failures[-1]
        if last.kind == "timeout":
            return FetchTimeoutError(
                "Request timed out. The server is taking too long to respond.", attempts
            )
        if last.kind == "http":
            return UpstreamError(f"{last} ({label})", status=last.status, attempts=attempts)
        return AllRelaysFailedError(
            f"All relays failed after {attempts} attempts: {last}",
            attempts,
            empty_only=all(f.kind == "empty" for f in failures),
        )

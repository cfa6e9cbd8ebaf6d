"""
Supabase persistence: search history and feedback rows via PostgREST.
"""
from __future__ import annotations

import logging

import httpx

from wayback_analyzer.config import settings
from wayback_analyzer.errors import PersistenceError

logger = logging.getLogger(__name__)


class SupabaseClient:
    """Minimal async Supabase client (PostgREST only)."""

    def __init__(self, url: str | None = None, key: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.base = (url or settings.supabase_url).rstrip("/")
        self.key = key or settings.supabase_key
        self._transport = transport
        self._headers = {
            "apikey": self.key,
            "Authorization": f"Bearer {self.key}",
        }

    def _rest_url(self, table: str) -> str:
        return f"{self.base}/rest/v1/{table}"

    async def insert(self, table: str, row: dict) -> dict:
        headers = {
            **self._headers,
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        try:
            async with httpx.AsyncClient(timeout=15, transport=self._transport) as client:
                res = await client.post(self._rest_url(table), headers=headers, json=row)
                res.raise_for_status()
                data = res.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise PersistenceError(f"Supabase insert into {table} failed: {exc}") from exc
        if isinstance(data, list):
            return data[0] if data else {}
        return data if isinstance(data, dict) else {}


_client: SupabaseClient | None = None


def get_supabase() -> SupabaseClient | None:
    if not settings.supabase_url or not settings.supabase_key:
        return None
    global _client
    if _client is None:
        _client = SupabaseClient()
    return _client


async def log_search(domain: str, sb: SupabaseClient | None = None) -> bool:
    """Record a searched domain. Never raises; returns whether the row was written."""
    sb = sb or get_supabase()
    if not sb:
        return False
    try:
        await sb.insert(settings.searches_table, {"domain": domain})
    except PersistenceError as exc:
        logger.warning("Search history not saved for %s: %s", domain, exc)
        return False
    return True


async def save_feedback(email: str, message: str, sb: SupabaseClient | None = None) -> dict:
    sb = sb or get_supabase()
    if not sb:
        raise PersistenceError("Feedback storage is not configured")
    return await sb.insert(settings.feedback_table, {"email": email, "message": message})

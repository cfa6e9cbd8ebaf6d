from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import replace
from pathlib import Path

from fastapi import FastAPI, Form, Request
from fastapi.responses import HTMLResponse, JSONResponse, Response
from fastapi.templating import Jinja2Templates

from wayback_analyzer.classifier import CONTENT_TYPES
from wayback_analyzer.config import settings
from wayback_analyzer.errors import (
    CollectionError,
    FetchError,
    FetchTimeoutError,
    PersistenceError,
    UpstreamError,
    ValidationError,
)
from wayback_analyzer.models import CollectorConfig
from wayback_analyzer.results import count_by_type, filter_records, sort_records
from wayback_analyzer.services.collector import (
    PaginatedCollector,
    ProgressTracker,
    build_cdx_url,
    build_page_source,
    parse_lines,
)
from wayback_analyzer.services.fetcher import RetryingFetcher
from wayback_analyzer.services.verifier import StatusVerifier
from wayback_analyzer.storage.supabase import log_search, save_feedback
from wayback_analyzer.utils import normalize_domain

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)
app = FastAPI(title=settings.app_name)
templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

NO_RESULTS_MESSAGE = "No archived URLs found for this domain"
RECENT_RUNS_SIZE = 16

# last successful run per domain, so re-filtering a page does not re-collect
recent_runs: OrderedDict[str, dict] = OrderedDict()
_background: set[asyncio.Task] = set()

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}


def build_collector(verify: bool | None = None) -> PaginatedCollector:
    config = CollectorConfig.from_settings()
    if verify is not None:
        config = replace(config, verify_status=verify)
    fetcher = RetryingFetcher(config)
    source = build_page_source(fetcher, settings.relay_url)
    return PaginatedCollector(config, source, StatusVerifier(config))


def relay_fetcher() -> RetryingFetcher:
    config = CollectorConfig.from_settings()
    # the relay is the server side: always go straight to the archive
    return RetryingFetcher(replace(config, relays=("{url}",)))


def relay_verifier() -> StatusVerifier:
    return StatusVerifier(CollectorConfig.from_settings())


def _relay_error(message: str, status_code: int, details: str | None = None) -> JSONResponse:
    body = {"error": message}
    if details:
        body["details"] = details
    return JSONResponse(body, status_code=status_code, headers=CORS_HEADERS)


def _non_negative_int(value, default: int) -> int | None:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


# ── Relay endpoint ───────────────────────────────────────────────────────────

@app.options("/wayback")
async def wayback_preflight():
    return Response(status_code=204, headers=CORS_HEADERS)


@app.post("/wayback")
async def wayback_relay(request: Request):
    try:
        payload = await request.json()
    except ValueError:
        return _relay_error("Request body must be JSON", 400)
    if not isinstance(payload, dict):
        return _relay_error("Request body must be a JSON object", 400)

    check_url = payload.get("checkUrl")
    if check_url and isinstance(check_url, str):
        logger.info("Checking URL status: %s", check_url)
        status, error = await relay_verifier().check_url(check_url)
        body = {"status": status}
        if error:
            body["error"] = error
        return JSONResponse(body, headers=CORS_HEADERS)

    domain = payload.get("domain")
    if isinstance(domain, str):
        domain = domain.strip()
    if not domain or not isinstance(domain, str):
        return _relay_error("Domain is required", 400)

    offset = _non_negative_int(payload.get("offset"), 0)
    limit = _non_negative_int(payload.get("limit"), settings.relay_default_limit)
    if offset is None or limit is None:
        return _relay_error("offset and limit must be non-negative integers", 400)

    logger.info("Fetching from Wayback Machine: %s offset=%s limit=%s", domain, offset, limit)
    cdx_url = build_cdx_url(domain, offset, limit)
    try:
        response = await relay_fetcher().fetch(cdx_url, allow_empty=True)
    except UpstreamError as exc:
        logger.error("Wayback API error for %s at offset %s: %s", domain, offset, exc)
        return _relay_error(f"Wayback Machine API error: {exc.status}", 502, str(exc))
    except FetchTimeoutError as exc:
        logger.error("Wayback API timeout for %s at offset %s", domain, offset)
        return _relay_error("Wayback Machine API timed out", 504, str(exc))
    except FetchError as exc:
        logger.error("Wayback fetch failed for %s at offset %s: %s", domain, offset, exc)
        return _relay_error("Failed to fetch from Wayback Machine", 502, str(exc))

    urls = parse_lines(response.text)
    logger.info("Found %s URLs for domain %s at offset %s", len(urls), domain, offset)
    return JSONResponse({"urls": urls}, headers=CORS_HEADERS)


# ── Collection API ───────────────────────────────────────────────────────────

def _record_search(domain: str) -> None:
    """History is written in the background; the response never waits on it."""
    task = asyncio.create_task(log_search(domain))
    _background.add(task)
    task.add_done_callback(_background.discard)


def _remember(domain: str, result: dict) -> None:
    recent_runs[domain] = result
    recent_runs.move_to_end(domain)
    while len(recent_runs) > RECENT_RUNS_SIZE:
        recent_runs.popitem(last=False)


async def run_collection(domain: str, verify: bool | None = None) -> dict:
    """Collect for ``domain``; returns the presentation payload and an HTTP status."""
    progress = ProgressTracker()
    collector = build_collector(verify)
    try:
        records = await collector.collect(domain, progress=progress)
    except ValidationError as exc:
        return {"records": [], "counts": count_by_type([]), "progress": progress.value,
                "error": str(exc), "status_code": 400}
    except CollectionError as exc:
        logger.error("Collection failed for %s: %s", domain, exc.__cause__ or exc)
        return {"records": [], "counts": count_by_type([]), "progress": progress.value,
                "error": str(exc), "status_code": 502}

    _record_search(normalize_domain(domain))

    return {
        "records": records,
        "counts": count_by_type(records),
        "progress": progress.value,
        "error": None if records else NO_RESULTS_MESSAGE,
        "status_code": 200,
    }


@app.post("/api/collect")
async def api_collect(request: Request):
    try:
        payload = await request.json()
    except ValueError:
        return JSONResponse({"records": [], "progress": 0, "error": "Request body must be JSON"}, status_code=400)
    if not isinstance(payload, dict):
        payload = {}

    domain = payload.get("domain")
    if not isinstance(domain, str):
        domain = ""
    verify = payload.get("verify")
    result = await run_collection(domain, verify if isinstance(verify, bool) else None)
    status_code = result.pop("status_code")
    result["records"] = [r.to_dict() for r in result["records"]]
    return JSONResponse(result, status_code=status_code)


@app.post("/api/feedback")
async def api_feedback(request: Request):
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        return JSONResponse({"error": "Request body must be a JSON object"}, status_code=400)

    email = str(payload.get("email") or "").strip()
    message = str(payload.get("message") or "").strip()
    if not email or not message:
        return JSONResponse({"error": "Email and message are required"}, status_code=400)

    try:
        await save_feedback(email, message)
    except PersistenceError as exc:
        logger.error("Feedback not saved: %s", exc)
        return JSONResponse({"error": "Failed to submit feedback. Please try again."}, status_code=503)
    return JSONResponse({"ok": True})


# ── HTML page ────────────────────────────────────────────────────────────────

@app.get("/", response_class=HTMLResponse)
async def index(request: Request):
    return templates.TemplateResponse(
        request, "index.html", {"result": None, "error": None, "content_types": CONTENT_TYPES}
    )


@app.post("/search", response_class=HTMLResponse)
async def search(
    request: Request,
    domain: str = Form(""),
    content_type: str = Form(""),
    sort: str = Form("url"),
    order: str = Form("asc"),
    action: str = Form("view"),
):
    key = normalize_domain(domain)
    cached = recent_runs.get(key) if action != "search" else None
    if cached is not None:
        result = dict(cached)
        status_code = 200
    else:
        result = await run_collection(domain)
        status_code = result.pop("status_code")
        if status_code == 200:
            _remember(key, dict(result))

    shown = sort_records(filter_records(result["records"], content_type or None), sort, order == "desc")
    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "domain": domain,
            "result": result,
            "records": shown,
            "active_filter": content_type,
            "sort": sort,
            "order": order,
            "error": result["error"],
            "content_types": CONTENT_TYPES,
        },
        status_code=status_code,
    )

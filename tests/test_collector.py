import asyncio

import httpx
import pytest

from wayback_analyzer.errors import CollectionError, UpstreamError, ValidationError
from wayback_analyzer.models import CollectorConfig
from wayback_analyzer.services.collector import (
    CdxPageSource,
    PaginatedCollector,
    ProgressTracker,
    RelayPageSource,
    build_cdx_url,
    build_page_source,
)
from wayback_analyzer.services.fetcher import RetryingFetcher
from wayback_analyzer.services.verifier import StatusVerifier


class FakeSource:
    def __init__(self, pages, fail_at=None):
        self.pages = pages
        self.fail_at = fail_at
        self.calls = []

    async def fetch_page(self, domain, offset, limit):
        self.calls.append((domain, offset, limit))
        if self.fail_at is not None and offset >= self.fail_at:
            raise UpstreamError("HTTP error! status: 503", status=503, attempts=4)
        return list(self.pages.get(offset, []))


def collect(source, config=None, domain="example.com", verifier=None):
    config = config or CollectorConfig(page_size=10, max_urls=100)
    seen = []
    records = asyncio.run(PaginatedCollector(config, source, verifier).collect(domain, on_progress=seen.append))
    return records, seen


def test_dedups_and_classifies():
    source = FakeSource({
        0: ["http://example.com/a.js", "http://example.com/a.js", "http://example.com/b.pdf"],
    })
    records, seen = collect(source)

    assert [(r.url, r.content_type) for r in records] == [
        ("http://example.com/a.js", "js"),
        ("http://example.com/b.pdf", "pdfs"),
    ]
    assert all(r.status == 200 for r in records)
    assert len({r.timestamp for r in records}) == 1
    assert seen[-1] == 100


def test_duplicates_across_pages_are_dropped():
    source = FakeSource({
        0: ["http://example.com/a", "http://example.com/b"],
        10: ["http://example.com/b", "http://example.com/c"],
    })
    records, _ = collect(source)
    assert [r.url for r in records] == ["http://example.com/a", "http://example.com/b", "http://example.com/c"]


def test_stops_after_empty_page_streak():
    source = FakeSource({0: ["http://example.com/a"]})
    collect(source, CollectorConfig(page_size=10, max_urls=100, empty_page_limit=3))
    assert [offset for _, offset, _ in source.calls] == [0, 10, 20, 30]


def test_page_with_only_seen_urls_counts_as_empty():
    source = FakeSource({
        0: ["http://example.com/a"],
        10: ["http://example.com/a"],
        20: ["http://example.com/a"],
        30: ["http://example.com/new"],
    })
    records, _ = collect(source)
    assert [r.url for r in records] == ["http://example.com/a"]
    assert len(source.calls) == 3


def test_stops_at_max_urls():
    pages = {o: [f"http://example.com/{o + i}" for i in range(10)] for o in range(0, 1000, 10)}
    source = FakeSource(pages)
    records, seen = collect(source, CollectorConfig(page_size=10, max_urls=25))
    assert len(records) == 25
    assert len(source.calls) == 3
    assert seen[-1] == 100


def test_progress_is_monotonic_and_ends_at_100():
    pages = {o: [f"http://example.com/{o + i}" for i in range(10)] for o in range(0, 50, 10)}
    records, seen = collect(FakeSource(pages))
    assert seen == sorted(seen)
    assert seen[-1] == 100
    assert max(seen[:-1]) <= 90


def test_empty_domain_fails_before_any_request():
    source = FakeSource({})
    with pytest.raises(ValidationError):
        collect(source, domain="https:// ")
    assert source.calls == []


def test_domain_is_normalized():
    source = FakeSource({})
    collect(source, domain="https://Example.com/")
    assert source.calls[0][0] == "example.com"


def test_no_urls_returns_empty_list():
    records, seen = collect(FakeSource({}))
    assert records == []
    assert seen[-1] == 100


def test_first_page_failure_raises_collection_error():
    with pytest.raises(CollectionError) as info:
        collect(FakeSource({}, fail_at=0))
    assert isinstance(info.value.__cause__, UpstreamError)


def test_later_failure_returns_partial_results():
    source = FakeSource(
        {0: ["http://example.com/a"], 10: ["http://example.com/b"]},
        fail_at=20,
    )
    records, seen = collect(source)
    assert [r.url for r in records] == ["http://example.com/a", "http://example.com/b"]
    assert seen[-1] == 100


def test_invalid_urls_are_filtered():
    source = FakeSource({0: ["http://example.com/ok", "example.com/no-scheme", "mailto:a@b.c", "http://[::1"]})
    records, _ = collect(source)
    assert [r.url for r in records] == ["http://example.com/ok"]


def test_live_status_verification():
    def handler(request):
        return httpx.Response(404 if request.url.path == "/gone" else 200)

    async def no_sleep(seconds):
        pass

    config = CollectorConfig(page_size=10, max_urls=100, verify_status=True, batch_size=1)
    verifier = StatusVerifier(config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), sleep=no_sleep)
    source = FakeSource({0: ["http://example.com/here", "http://example.com/gone"]})
    records, seen = collect(source, config, verifier=verifier)

    assert {r.url: r.status for r in records} == {"http://example.com/here": 200, "http://example.com/gone": 404}
    assert seen == sorted(seen)
    # collection is scaled into the 0-40 band when verification follows
    assert seen[1] <= 40
    assert seen[-1] == 100


def test_progress_tracker_clamps():
    seen = []
    tracker = ProgressTracker(seen.append)
    tracker.update(10)
    tracker.update(5)
    tracker.update(10)
    tracker.update(250)
    assert seen == [10, 100]
    assert tracker.value == 100
    assert tracker.done


def test_build_cdx_url():
    url = build_cdx_url("example.com", 100, 50, endpoint="https://web.archive.org/cdx/search/cdx")
    assert url == (
        "https://web.archive.org/cdx/search/cdx?url=*.example.com/*&output=text"
        "&fl=original&collapse=urlkey&offset=100&limit=50"
    )


def test_cdx_source_reads_lines_and_treats_empty_as_last_page():
    def handler(request):
        if request.url.params["offset"] == "0":
            return httpx.Response(200, text="http://example.com/a\n\nhttp://example.com/b\n")
        return httpx.Response(200, text="")

    async def no_sleep(seconds):
        pass

    config = CollectorConfig(max_retries=1)
    fetcher = RetryingFetcher(config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), sleep=no_sleep)
    source = CdxPageSource(fetcher)

    assert asyncio.run(source.fetch_page("example.com", 0, 10)) == ["http://example.com/a", "http://example.com/b"]
    assert asyncio.run(source.fetch_page("example.com", 10, 10)) == []


def test_relay_source_posts_page_request():
    bodies = []

    def handler(request):
        bodies.append(request.content)
        return httpx.Response(200, json={"urls": ["http://example.com/a", "", 3]})

    fetcher = RetryingFetcher(CollectorConfig(), client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    source = build_page_source(fetcher, "https://relay.test/wayback")

    assert isinstance(source, RelayPageSource)
    assert asyncio.run(source.fetch_page("example.com", 20, 10)) == ["http://example.com/a"]
    assert b'"offset":20' in bodies[0].replace(b" ", b"")


def test_default_page_source_is_cdx():
    assert isinstance(build_page_source(RetryingFetcher(CollectorConfig())), CdxPageSource)


def test_relay_source_rejects_bad_payload():
    fetcher = RetryingFetcher(
        CollectorConfig(),
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))),
    )
    with pytest.raises(UpstreamError):
        asyncio.run(RelayPageSource(fetcher, "https://relay.test/wayback").fetch_page("example.com", 0, 10))


def test_relay_source_rejects_missing_url_list():
    fetcher = RetryingFetcher(
        CollectorConfig(),
        client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"urls": None}))),
    )
    with pytest.raises(UpstreamError):
        asyncio.run(RelayPageSource(fetcher, "https://relay.test/wayback").fetch_page("example.com", 0, 10))


def test_relay_page_without_url_list_ends_collection_with_partial_results():
    def handler(request):
        if b'"offset":0' in request.content.replace(b" ", b""):
            return httpx.Response(200, json={"urls": ["http://example.com/a"]})
        return httpx.Response(200, json={"urls": {"bad": True}})

    config = CollectorConfig(page_size=10, max_urls=100)
    fetcher = RetryingFetcher(config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    records, seen = collect(RelayPageSource(fetcher, "https://relay.test/wayback"), config)

    assert [r.url for r in records] == ["http://example.com/a"]
    assert seen[-1] == 100


def test_empty_tail_page_is_retried_once():
    offsets = []

    def handler(request):
        offsets.append(request.url.params["offset"])
        return httpx.Response(200, text="")

    async def no_sleep(seconds):
        pass

    config = CollectorConfig(max_retries=3)
    fetcher = RetryingFetcher(config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), sleep=no_sleep)
    source = CdxPageSource(fetcher)

    assert asyncio.run(source.fetch_page("example.com", 10, 10)) == []
    assert offsets == ["10", "10"]

    offsets.clear()
    assert asyncio.run(source.fetch_page("example.com", 0, 10)) == []
    assert offsets == ["0"] * 4

"""
Tests for page fetching and the recrawl processor.
"""

import hashlib

import aiohttp
import pytest
import pytest_asyncio
from aioresponses import aioresponses

from pageflow.config import CrawlerConfig
from pageflow.crawler import CrawlProcessor, PageFetcher
from pageflow.errors import ErrorKind
from pageflow.protocols import Candidate, CandidateFailure, Success
from tests.helpers.fakes import HOUR, NOW

URL = "https://shop.test/drill"


@pytest_asyncio.fixture
async def fetcher():
    f = PageFetcher(CrawlerConfig(retries=3, backoff_multiplier=0))
    await f.initialize()
    yield f
    await f.close()


@pytest.fixture
def processor(page_store, fetcher):
    return CrawlProcessor(page_store, fetcher, max_content_chars=10)


async def crawl_candidate(store):
    page_id = await store.add_page(URL, last_crawled_at=NOW - 100 * HOUR, content_text="old text", http_status=200)
    return Candidate(page=await store.require_page(page_id), stage="crawl")


@pytest.mark.unit
class TestPageFetcher:
    @pytest.mark.asyncio
    async def test_fetch_ok(self, fetcher):
        with aioresponses() as m:
            m.get(URL, status=200, body="hello")
            result = await fetcher.fetch(URL)

        assert result.ok
        assert result.text() == "hello"
        assert result.content_hash == hashlib.sha256(b"hello").hexdigest()

    @pytest.mark.asyncio
    async def test_http_error_not_retried(self, fetcher):
        with aioresponses() as m:
            m.get(URL, status=404, body="gone")
            result = await fetcher.fetch(URL)

        assert result.status == 404
        assert not result.ok

    @pytest.mark.asyncio
    async def test_connection_error_retried(self, fetcher):
        with aioresponses() as m:
            m.get(URL, exception=aiohttp.ClientConnectionError("reset"))
            m.get(URL, status=200, body="second time")
            result = await fetcher.fetch(URL)

        assert result.text() == "second time"

    @pytest.mark.asyncio
    async def test_retries_exhausted_raise(self, fetcher):
        with aioresponses() as m:
            m.get(URL, exception=aiohttp.ClientConnectionError("down"), repeat=True)
            with pytest.raises(aiohttp.ClientConnectionError):
                await fetcher.fetch(URL)


@pytest.mark.unit
class TestCrawlProcessor:
    @pytest.mark.asyncio
    async def test_success_updates_content(self, page_store, processor):
        candidate = await crawl_candidate(page_store)
        with aioresponses() as m:
            m.get(URL, status=200, body="new content here")
            outcome = await processor.process(candidate)

        assert isinstance(outcome, Success)
        page = await page_store.require_page(candidate.page_id)
        assert page.http_status == 200
        assert page.content_text == "new conten"
        assert page.content_length == len("new content here")
        assert page.last_crawled_at == outcome.completed_at

    @pytest.mark.asyncio
    async def test_error_status_keeps_old_content(self, page_store, processor):
        candidate = await crawl_candidate(page_store)
        with aioresponses() as m:
            m.get(URL, status=503, body="maintenance")
            outcome = await processor.process(candidate)

        assert isinstance(outcome, Success)
        page = await page_store.require_page(candidate.page_id)
        assert page.http_status == 503
        assert page.content_text == "old text"
        assert page.last_crawled_at > NOW - 100 * HOUR

    @pytest.mark.asyncio
    async def test_transport_failure_is_candidate_failure(self, page_store, processor):
        candidate = await crawl_candidate(page_store)
        with aioresponses() as m:
            m.get(URL, exception=aiohttp.ClientConnectionError("down"), repeat=True)
            outcome = await processor.process(candidate)

        assert isinstance(outcome, CandidateFailure)
        assert outcome.last_error is ErrorKind.TRANSPORT_UNAVAILABLE
        page = await page_store.require_page(candidate.page_id)
        assert page.content_text == "old text"
        assert page.http_status == 200
        assert page.last_crawled_at == NOW - 100 * HOUR

    @pytest.mark.asyncio
    async def test_invalid_url_is_candidate_failure(self, page_store, processor):
        page_id = await page_store.add_page("not a url at all")
        before = await page_store.require_page(page_id)
        outcome = await processor.process(Candidate(page=before, stage="crawl"))

        assert isinstance(outcome, CandidateFailure)
        assert outcome.attempts == 1
        assert await page_store.require_page(page_id) == before

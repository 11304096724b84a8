"""
HTTP fetching for the recrawl stage.
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass, field
from typing import Dict, Optional

import aiohttp
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from pageflow.config.config import CrawlerConfig
from pageflow.errors import ErrorKind
from pageflow.protocols import Candidate, CandidateFailure, StageOutcome, Success
from pageflow.storage.page_store import PageStore

logger = structlog.get_logger(__name__)

TRANSIENT_ERRORS = (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError)


@dataclass
class FetchResult:
    url: str
    final_url: str
    status: int
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def text(self, limit: Optional[int] = None) -> str:
        decoded = self.body.decode("utf-8", errors="replace")
        return decoded if limit is None else decoded[:limit]

    @property
    def content_hash(self) -> str:
        return hashlib.sha256(self.body).hexdigest()


class PageFetcher:
    """aiohttp GET with tenacity retries on connection-level failures."""

    def __init__(self, config: CrawlerConfig, session: Optional[aiohttp.ClientSession] = None) -> None:
        self.config = config
        self.session = session
        self._owns_session = session is None

    async def initialize(self) -> None:
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
                headers={"User-Agent": self.config.user_agent},
            )
            self._owns_session = True

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch ``url``, retrying connection errors and timeouts.

        HTTP error statuses are returned, not retried: a 404 is a valid crawl
        result. Raises the last transport error once retries are exhausted.
        """
        if self.session is None:
            await self.initialize()
        assert self.session is not None

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.retries),
            wait=wait_exponential(multiplier=self.config.backoff_multiplier, max=10),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._get(url)
        raise AssertionError("unreachable")  # pragma: no cover

    async def _get(self, url: str) -> FetchResult:
        assert self.session is not None
        async with self.session.get(url, allow_redirects=True) as response:
            body = await response.read()
            return FetchResult(
                url=url,
                final_url=str(response.url),
                status=response.status,
                body=body,
                headers={k: v for k, v in response.headers.items()},
            )


class CrawlProcessor:
    """Recrawl one page and record the result."""

    def __init__(self, store: PageStore, fetcher: PageFetcher, max_content_chars: int = 200_000) -> None:
        self.store = store
        self.fetcher = fetcher
        self.max_content_chars = max_content_chars

    async def process(self, candidate: Candidate, *, max_attempts: int = 1, sleep_ms: int = 0) -> StageOutcome:
        page = candidate.page
        try:
            result = await self.fetcher.fetch(page.url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            # Nothing is written; the page stays due and is retried on the next run.
            message = str(e) or e.__class__.__name__
            logger.warning("Fetch failed", page_id=page.id, url=page.url, error=message)
            return CandidateFailure(
                kind=ErrorKind.ATTEMPTS_EXHAUSTED,
                message=message,
                attempts=self.fetcher.config.retries if isinstance(e, TRANSIENT_ERRORS) else 1,
                last_error=ErrorKind.TRANSPORT_UNAVAILABLE,
            )

        fields: Dict[str, object] = {"http_status": result.status}
        if result.ok:
            fields.update(
                content_text=result.text(self.max_content_chars),
                content_hash=result.content_hash,
                content_length=len(result.body),
            )
        completed_at = await self.store.complete_stage(page.id, fields, "last_crawled_at")
        logger.info("Page crawled", page_id=page.id, status=result.status, bytes=len(result.body))
        return Success(fields=fields, attempts=1, completed_at=completed_at)

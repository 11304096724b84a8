"""
Tests for the stage batch runner: limits, lock skipping and batch abort.
"""

import asyncio

import pytest
from aioresponses import aioresponses

from pageflow.config import CrawlerConfig
from pageflow.crawler import CrawlProcessor, PageFetcher
from pageflow.errors import ErrorKind, GeneratorUnavailableError, PageNotFoundError, UnknownStageError
from pageflow.extraction import ExtractionRetryEngine
from pageflow.locking import StageLockManager
from pageflow.observability.events import BATCH_ABORTED, CANDIDATE_FINISHED
from pageflow.observability.metrics import METRICS
from pageflow.pipeline import EXIT_FAILURE, EXIT_SUCCESS, StageBatchRunner
from pageflow.scheduling import CandidateSelector
from pageflow.stages import default_registry
from tests.helpers.fakes import NOW, ScriptedGenerator, add_product_page, content
from tests.helpers.metric_delta import metric_delta

VALID = '{"is_product": true, "is_product_available": true, "product_type": "drill"}'


class VanishingProcessor:
    """Processor whose page disappears before the result is written."""

    async def process(self, candidate, *, max_attempts, sleep_ms):
        raise PageNotFoundError(candidate.page_id)


@pytest.fixture
def make_runner(page_store, lock_manager, events, sleeper, clock):
    def _make(script, processors=None):
        registry = default_registry()
        generator = ScriptedGenerator(script)
        engine = ExtractionRetryEngine(
            registry.get("product_type"), generator, page_store, events=events, sleep=sleeper, clock=clock
        )
        runner = StageBatchRunner(
            CandidateSelector(page_store, clock=clock),
            lock_manager,
            registry,
            processors or {"product_type": engine},
            events=events,
        )
        return runner, generator

    return _make


async def add_pages(store, count):
    return [
        await store.add_page(f"https://shop.test/{i}", content_text="Drill page", last_crawled_at=NOW)
        for i in range(count)
    ]


@pytest.mark.unit
class TestStageBatchRunner:
    @pytest.mark.asyncio
    async def test_processes_all_candidates(self, page_store, make_runner, lock_manager):
        ids = await add_pages(page_store, 3)
        runner, _ = make_runner([content(VALID)])

        report = await runner.run("product_type", limit=10)

        assert report.processed == 3
        assert report.exit_code == EXIT_SUCCESS
        for page_id in ids:
            page = await page_store.require_page(page_id)
            assert page.product_type == "drill"
            assert not await lock_manager.is_locked(page_id, "product_type")

    @pytest.mark.asyncio
    async def test_limit_caps_batch(self, page_store, make_runner):
        ids = await add_pages(page_store, 5)
        runner, generator = make_runner([content(VALID)])

        report = await runner.run("product_type", limit=2)

        assert report.processed == 2
        assert generator.call_count == 2
        assert (await page_store.require_page(ids[2])).product_type_detected_at is None

    @pytest.mark.asyncio
    async def test_fatal_failure_aborts_batch(self, page_store, make_runner, events):
        ids = await add_pages(page_store, 3)
        runner, generator = make_runner([content(VALID), GeneratorUnavailableError("Cannot connect")])

        report = await runner.run("product_type", limit=10, max_attempts=3, sleep_ms=100)

        assert report.processed == 1
        assert report.aborted
        assert report.abort_reason == "Cannot connect"
        assert report.failed == 0
        assert report.exit_code == EXIT_FAILURE
        assert generator.call_count == 2
        for page_id in ids[1:]:
            assert (await page_store.require_page(page_id)).product_type_detected_at is None
        assert events.of(BATCH_ABORTED)[0].fields["page_id"] == ids[1]

    @pytest.mark.asyncio
    async def test_raised_connection_error_aborts_batch(self, page_store, make_runner):
        ids = await add_pages(page_store, 2)
        runner, generator = make_runner([ConnectionError("connection refused"), content(VALID)])

        report = await runner.run("product_type", limit=10)

        assert report.aborted
        assert report.abort_reason == "connection refused"
        assert report.exit_code == EXIT_FAILURE
        assert generator.call_count == 1
        assert (await page_store.require_page(ids[1])).product_type_detected_at is None

    @pytest.mark.asyncio
    async def test_timeout_aborts_batch(self, page_store, make_runner):
        await add_pages(page_store, 1)
        runner, _ = make_runner([asyncio.TimeoutError()])

        report = await runner.run("product_type")

        assert report.aborted
        assert report.abort_reason == "TimeoutError"

    @pytest.mark.asyncio
    async def test_exhausted_candidate_does_not_stop_batch(self, page_store, make_runner):
        ids = await add_pages(page_store, 3)
        runner, _ = make_runner([content("no idea"), content(VALID)])

        report = await runner.run("product_type", limit=10, max_attempts=1)

        assert report.processed == 2
        assert report.failed == 1
        assert report.failures == [(ids[0], ErrorKind.ATTEMPTS_EXHAUSTED, 1)]
        assert report.to_dict()["failures"] == [{"page_id": ids[0], "kind": "attempts_exhausted", "attempts": 1}]
        assert not report.aborted
        assert report.exit_code == EXIT_FAILURE

    @pytest.mark.asyncio
    async def test_locked_page_is_skipped_and_counts_toward_limit(self, page_store, make_runner, memory_locks):
        ids = await add_pages(page_store, 3)
        other_worker = StageLockManager(memory_locks, ttl_seconds=10)
        await other_worker.acquire(ids[0], "product_type")
        runner, generator = make_runner([content(VALID)])

        report = await runner.run("product_type", limit=2)

        assert report.skipped_locked == 1
        assert report.processed == 1
        assert report.attempted == 2
        assert generator.call_count == 1
        assert report.exit_code == EXIT_SUCCESS
        # the other worker's claim survives the batch
        assert await other_worker.is_locked(ids[0], "product_type")

    @pytest.mark.asyncio
    async def test_domain_filter(self, page_store, make_runner):
        await add_pages(page_store, 2)
        other = await page_store.add_page("https://other.test/p", content_text="x", last_crawled_at=NOW)
        runner, _ = make_runner([content(VALID)])

        report = await runner.run("product_type", domain="other.test")

        assert report.processed == 1
        assert (await page_store.require_page(other)).product_type == "drill"

    @pytest.mark.asyncio
    async def test_vanished_page_counts_as_failed(self, page_store, make_runner):
        await add_pages(page_store, 2)
        runner, _ = make_runner([], processors={"product_type": VanishingProcessor()})

        report = await runner.run("product_type")

        assert report.failed == 2
        assert {kind for _, kind, _ in report.failures} == {ErrorKind.MISSING_INPUT}

    @pytest.mark.asyncio
    async def test_unknown_stage(self, make_runner):
        runner, _ = make_runner([content(VALID)])
        with pytest.raises(UnknownStageError):
            await runner.run("translate")
        # defined stage without a processor
        with pytest.raises(UnknownStageError):
            await runner.run("recap")

    @pytest.mark.asyncio
    async def test_batch_metric(self, page_store, make_runner):
        await add_pages(page_store, 1)
        runner, _ = make_runner([content(VALID)])
        with metric_delta(METRICS["batches_total"], labels={"stage": "product_type", "status": "ok"}):
            await runner.run("product_type")

    @pytest.mark.asyncio
    async def test_report_dict(self, page_store, make_runner):
        await add_pages(page_store, 1)
        runner, _ = make_runner([content(VALID)])
        data = (await runner.run("product_type")).to_dict()
        assert data["stage"] == "product_type"
        assert data["processed"] == 1
        assert data["exit_code"] == 0
        assert len(data["run_id"]) == 12


@pytest.mark.unit
class TestSinglePage:
    @pytest.mark.asyncio
    async def test_process_one_page(self, page_store, make_runner):
        ids = await add_pages(page_store, 3)
        runner, generator = make_runner([content(VALID)])

        report = await runner.run("product_type", resource_id=ids[1])

        assert report.processed == 1
        assert generator.call_count == 1
        assert (await page_store.require_page(ids[0])).product_type_detected_at is None

    @pytest.mark.asyncio
    async def test_ineligible_page_is_skipped(self, page_store, make_runner, events):
        page_id = await add_product_page(page_store, "https://shop.test/done", product_type_detected_at=NOW)
        runner, generator = make_runner([content(VALID)])

        report = await runner.run("product_type", resource_id=page_id)

        assert report.skipped_ineligible == 1
        assert report.exit_code == EXIT_SUCCESS
        assert generator.call_count == 0
        assert events.of(CANDIDATE_FINISHED)[0].fields["status"] == "skipped_ineligible"

    @pytest.mark.asyncio
    async def test_force_reprocesses(self, page_store, make_runner):
        page_id = await add_product_page(page_store, "https://shop.test/done", product_type_detected_at=NOW)
        runner, _ = make_runner([content(VALID)])

        report = await runner.run("product_type", resource_id=page_id, force=True)

        assert report.processed == 1
        assert (await page_store.require_page(page_id)).product_type == "drill"

    @pytest.mark.asyncio
    async def test_missing_page_raises(self, make_runner):
        runner, _ = make_runner([content(VALID)])
        with pytest.raises(PageNotFoundError):
            await runner.run("product_type", resource_id=404)

    @pytest.mark.asyncio
    async def test_locked_page(self, page_store, make_runner, memory_locks):
        ids = await add_pages(page_store, 1)
        await StageLockManager(memory_locks).acquire(ids[0], "product_type")
        runner, generator = make_runner([content(VALID)])

        report = await runner.run("product_type", resource_id=ids[0])

        assert report.skipped_locked == 1
        assert report.exit_code == EXIT_SUCCESS
        assert generator.call_count == 0


@pytest.mark.unit
class TestCrawlBatch:
    @pytest.mark.asyncio
    async def test_bad_url_does_not_stop_batch(self, page_store, make_runner):
        bad = await page_store.add_page("not a url at all")
        good = await page_store.add_page("https://shop.test/ok")
        fetcher = PageFetcher(CrawlerConfig(retries=1))
        runner, _ = make_runner([], processors={"crawl": CrawlProcessor(page_store, fetcher)})

        try:
            with aioresponses() as m:
                m.get("https://shop.test/ok", status=200, body="fine")
                report = await runner.run("crawl", limit=10)
        finally:
            await fetcher.close()

        assert report.processed == 1
        assert report.failed == 1
        assert not report.aborted
        assert [page_id for page_id, _, _ in report.failures] == [bad]
        assert (await page_store.require_page(bad)).last_crawled_at is None
        assert (await page_store.require_page(good)).content_text == "fine"

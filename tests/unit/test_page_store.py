"""
Tests for the SQLite page store.
"""

import pytest

from pageflow.errors import ErrorKind, PageNotFoundError, UnknownStageError
from pageflow.storage import PageStore
from tests.helpers.fakes import NOW


@pytest.mark.unit
class TestPageStore:
    @pytest.mark.asyncio
    async def test_add_page_derives_domain(self, page_store):
        page_id = await page_store.add_page("https://Shop.Test/p?x=1", title="P")
        page = await page_store.require_page(page_id)
        assert page.domain == "shop.test"
        assert page.title == "P"
        assert page.inbound_links_count == 0
        assert page.last_crawled_at is None

    @pytest.mark.asyncio
    async def test_known_url_keeps_row(self, page_store):
        first = await page_store.add_page("https://shop.test/p", title="first")
        second = await page_store.add_page("https://shop.test/p", title="second")
        assert first == second
        assert (await page_store.require_page(first)).title == "first"
        assert await page_store.count_pages() == 1

    @pytest.mark.asyncio
    async def test_increment_inbound_links(self, page_store):
        page_id = await page_store.add_page("https://shop.test/p", inbound_links_count=2)
        await page_store.increment_inbound_links("https://shop.test/p", by=3)
        assert (await page_store.require_page(page_id)).inbound_links_count == 5

    @pytest.mark.asyncio
    async def test_complete_stage_writes_fields_and_timestamp(self, page_store):
        page_id = await page_store.add_page("https://shop.test/p")
        at = await page_store.complete_stage(
            page_id,
            {"json_attributes": {"Color": "красный"}, "product_model_number": "M1"},
            "attributes_extracted_at",
            NOW,
        )
        page = await page_store.require_page(page_id)
        assert at == NOW
        assert page.json_attributes == {"Color": "красный"}
        assert page.attributes_extracted_at == NOW

    @pytest.mark.asyncio
    async def test_complete_stage_on_missing_page(self, page_store):
        with pytest.raises(PageNotFoundError):
            await page_store.complete_stage(99, {"product_type": "x"}, "product_type_detected_at")

    @pytest.mark.asyncio
    async def test_unknown_column_rejected(self, page_store):
        with pytest.raises(ValueError):
            await page_store.add_page("https://shop.test/p", colour="red")

    @pytest.mark.asyncio
    async def test_booleans_round_trip(self, page_store):
        page_id = await page_store.add_page("https://shop.test/p", is_product=True, is_product_available=False)
        page = await page_store.require_page(page_id)
        assert page.is_product is True
        assert page.is_product_available is False

    @pytest.mark.asyncio
    async def test_reopen_keeps_data(self, storage_config):
        async with PageStore(storage_config) as store:
            page_id = await store.add_page("https://shop.test/p")
        async with PageStore(storage_config) as store:
            assert (await store.require_page(page_id)).url == "https://shop.test/p"

    @pytest.mark.asyncio
    async def test_use_before_initialize(self, storage_config):
        with pytest.raises(RuntimeError):
            await PageStore(storage_config).get_page(1)


@pytest.mark.unit
class TestErrors:
    def test_only_transport_is_fatal(self):
        assert [kind for kind in ErrorKind if kind.is_fatal] == [ErrorKind.TRANSPORT_UNAVAILABLE]

    def test_retryable_kinds(self):
        assert ErrorKind.INVALID_JSON.is_retryable
        assert ErrorKind.HTTP_ERROR.is_retryable
        assert not ErrorKind.ATTEMPTS_EXHAUSTED.is_retryable
        assert not ErrorKind.MISSING_INPUT.is_retryable
        assert not ErrorKind.LOCK_CONTENTION.is_retryable

    def test_unknown_stage_message_lists_known(self):
        assert "recap, crawl" in str(UnknownStageError("x", ["recap", "crawl"]))

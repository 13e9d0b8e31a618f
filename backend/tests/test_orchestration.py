"""Test suite for run orchestration.

Tests cover:
- ScraperService end-to-end runs against faked source APIs
- Source factory registration
- Scheduler job management and run recording
- Settings parsing
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import func, select

from pricearchive.config import Settings, settings
from pricearchive.core.exceptions import SourceNotFoundError
from pricearchive.models import Category, Manufacturer, PricePoint, Product, ScraperJob, Store
from pricearchive.scrapers.adapters import MegaImageAdapter, MetroAdapter
from pricearchive.scrapers.factory import SourceFactory
from pricearchive.scrapers.fetcher import Fetcher
from pricearchive.scrapers.register_sources import register_all_sources
from pricearchive.scrapers.scheduler import ScraperScheduler
from pricearchive.scrapers.scraper_service import ScraperService


# ============================================================================
# FIXTURES
# ============================================================================

AS_OF = datetime(2026, 3, 14, 10, 5, tzinfo=timezone.utc)


def mega_handler(total_pages, broken_pages=(), unreadable_pages=()):
    """Fake Mega Image API: one product per page, named after its page."""

    def handler(request: httpx.Request) -> httpx.Response:
        variables = json.loads(request.url.params["variables"])
        page = (variables["category"], variables["pageNumber"])
        if page in broken_pages:
            return httpx.Response(404)
        if page in unreadable_pages:
            return httpx.Response(200, json={"data": None})
        product = {
            "name": f"iaurt {page[0]} pagina {page[1]}",
            "manufacturerName": "danone",
            "price": {"unitPrice": "3.49", "unit": "buc"},
            "images": [],
        }
        return httpx.Response(200, json={
            "data": {
                "categoryProductSearch": {
                    "products": [product],
                    "pagination": {"totalPages": total_pages[page[0]]},
                }
            }
        })

    return handler


def metro_handler(result_ids):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/search"):
            return httpx.Response(200, json={"resultIds": result_ids})
        articles = {
            article_id: {
                "variants": {
                    "v": {
                        "imageUrl": None,
                        "description": f"Lapte {article_id}",
                        "bundles": {
                            "b": {
                                "description": f"Lapte {article_id} 1L",
                                "brandName": "zuzu",
                                "stores": {"00013": {"sellingPriceInfo": {"finalPrice": 7.5}}},
                            }
                        },
                    }
                }
            }
            for article_id in request.url.params.get_list("ids")
        }
        return httpx.Response(200, json={"result": articles})

    return handler


def make_service(session_factory, handler, builders) -> ScraperService:
    factory = SourceFactory()
    for slug, builder in builders.items():
        factory.register_source(slug, builder)
    fetcher = Fetcher(
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        max_concurrency=4,
        max_attempts=1,
        backoff_seconds=0,
    )
    return ScraperService(session_factory, fetcher=fetcher, source_factory=factory)


async def count(session_factory, model) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(model))
        return result.scalar_one()


# ============================================================================
# TESTS: SCRAPER SERVICE
# ============================================================================

class TestScraperService:
    """End-to-end runs through plan, fetch, interpret and reconcile."""

    async def test_paginated_source_run(self, session_factory, test_db):
        service = make_service(
            session_factory,
            mega_handler({"c1": 3, "c2": 2}),
            {"mega-image": lambda: MegaImageAdapter(categories={"Dairy": ("c1", "c2")})},
        )

        stats = await service.run_source("mega-image", as_of=AS_OF)

        assert stats["requests_planned"] == 5
        assert stats["requests_failed"] == 0
        assert stats["items_found"] == 5
        assert stats["products_created"] == 5
        assert stats["price_points_created"] == 5
        assert await count(session_factory, Product) == 5
        assert await count(session_factory, PricePoint) == 5

        stores = (await test_db.execute(select(Store.name))).scalars().all()
        categories = (await test_db.execute(select(Category.name))).scalars().all()
        manufacturers = (await test_db.execute(select(Manufacturer.name))).scalars().all()
        assert stores == ["Mega Image"]
        assert categories == ["Dairy"]
        assert manufacturers == ["Danone"]

    async def test_second_run_in_same_hour_changes_nothing(self, session_factory):
        service = make_service(
            session_factory,
            mega_handler({"c1": 3, "c2": 2}),
            {"mega-image": lambda: MegaImageAdapter(categories={"Dairy": ("c1", "c2")})},
        )

        await service.run_source("mega-image", as_of=AS_OF)
        stats = await service.run_source("mega-image", as_of=AS_OF + timedelta(minutes=30))

        assert stats["products_created"] == 0
        assert stats["products_updated"] == 5
        assert stats["price_points_created"] == 0
        assert stats["price_points_skipped"] == 5
        assert await count(session_factory, Product) == 5
        assert await count(session_factory, PricePoint) == 5

    async def test_next_hour_adds_price_points(self, session_factory):
        service = make_service(
            session_factory,
            mega_handler({"c1": 1}),
            {"mega-image": lambda: MegaImageAdapter(categories={"Dairy": ("c1",)})},
        )

        await service.run_source("mega-image", as_of=AS_OF)
        await service.run_source("mega-image", as_of=AS_OF + timedelta(hours=1))

        assert await count(session_factory, Product) == 1
        assert await count(session_factory, PricePoint) == 2

    async def test_failed_and_rejected_responses_are_counted(self, session_factory):
        service = make_service(
            session_factory,
            mega_handler(
                {"c1": 3, "c2": 2},
                broken_pages={("c1", 2)},
                unreadable_pages={("c2", 1)},
            ),
            {"mega-image": lambda: MegaImageAdapter(categories={"Dairy": ("c1", "c2")})},
        )

        stats = await service.run_source("mega-image", as_of=AS_OF)

        assert stats["requests_planned"] == 5
        assert stats["requests_failed"] == 1
        assert stats["responses_rejected"] == 1
        assert stats["items_found"] == 3
        assert await count(session_factory, Product) == 3

    async def test_batched_source_run(self, session_factory):
        ids = [f"{i:06d}" for i in range(45)]
        service = make_service(
            session_factory,
            metro_handler(ids),
            {"metro": lambda: MetroAdapter(categories={"Lactate/Oua": ("alimentare/lactate",)})},
        )

        stats = await service.run_source("metro", as_of=AS_OF)

        assert stats["requests_planned"] == 2
        assert stats["items_found"] == 45
        assert stats["products_created"] == 45

        async with session_factory() as session:
            units = (await session.execute(select(Product.unit).distinct())).scalars().all()
        assert units == ["L"]

    async def test_fatal_interpretation_error_writes_nothing(self, session_factory):
        class ExplodingAdapter(MegaImageAdapter):
            async def interpret(self, payload, category, registry):
                raise RuntimeError("adapter bug")

        service = make_service(
            session_factory,
            mega_handler({"c1": 2}),
            {"mega-image": lambda: ExplodingAdapter(categories={"Dairy": ("c1",)})},
        )

        with pytest.raises(RuntimeError):
            await service.run_source("mega-image", as_of=AS_OF)

        assert await count(session_factory, Product) == 0
        assert await count(session_factory, PricePoint) == 0

    async def test_cancelled_run_writes_nothing(self, session_factory):
        answer_search = metro_handler(["000001", "000002"])
        details_requested = asyncio.Event()
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/search"):
                return answer_search(request)
            details_requested.set()
            await release.wait()
            return answer_search(request)

        service = make_service(
            session_factory,
            handler,
            {"metro": lambda: MetroAdapter(categories={"Lactate/Oua": ("alimentare/lactate",)})},
        )

        run = asyncio.ensure_future(service.run_source("metro", as_of=AS_OF))
        await asyncio.wait_for(details_requested.wait(), timeout=2)
        run.cancel()

        with pytest.raises(asyncio.CancelledError):
            await run
        assert await count(session_factory, Product) == 0
        assert await count(session_factory, PricePoint) == 0

    async def test_unknown_source(self, session_factory):
        service = make_service(session_factory, mega_handler({}), {})

        with pytest.raises(SourceNotFoundError):
            await service.run_source("lidl")

    async def test_run_sources_isolates_failures(self, session_factory):
        service = make_service(
            session_factory,
            mega_handler({"c1": 1}),
            {"mega-image": lambda: MegaImageAdapter(categories={"Dairy": ("c1",)})},
        )

        results = await service.run_sources(["mega-image", "lidl"])

        assert results["mega-image"]["products_created"] == 1
        assert "lidl" in results["lidl"]["error"]


# ============================================================================
# TESTS: SOURCE FACTORY
# ============================================================================

class TestSourceFactory:
    """Tests for adapter registration."""

    def test_register_all_sources(self):
        factory = register_all_sources(SourceFactory())

        assert set(factory.get_registered_sources()) == {"mega-image", "metro"}
        assert isinstance(factory.create_source("metro"), MetroAdapter)
        assert factory.create_source("mega-image").store_name == "Mega Image"

    def test_each_create_returns_fresh_adapter(self):
        factory = register_all_sources(SourceFactory())
        assert factory.create_source("metro") is not factory.create_source("metro")

    def test_unknown_source_raises(self):
        factory = SourceFactory()

        assert not factory.has_source("lidl")
        with pytest.raises(SourceNotFoundError):
            factory.create_source("lidl")

    def test_builder_must_produce_an_adapter(self):
        factory = SourceFactory()
        factory.register_source("broken", object)

        with pytest.raises(TypeError):
            factory.create_source("broken")

    def test_builder_must_be_callable(self):
        with pytest.raises(ValueError):
            SourceFactory().register_source("broken", "not-a-class")


# ============================================================================
# TESTS: SCHEDULER
# ============================================================================

class TestScraperScheduler:
    """Tests for job management and run recording."""

    async def test_successful_run_is_recorded(self, session_factory, test_db):
        scraper_service = AsyncMock()
        scraper_service.run_source.return_value = {
            "requests_planned": 12,
            "requests_failed": 1,
            "responses_rejected": 0,
            "items_found": 40,
            "products_created": 30,
            "products_updated": 10,
            "price_points_created": 40,
            "errors": 0,
        }
        scheduler = ScraperScheduler(session_factory, scraper_service=scraper_service)

        job_id = await scheduler.run_source_scrape("metro")

        job = await test_db.get(ScraperJob, job_id)
        assert job.source == "metro"
        assert job.status == "completed"
        assert job.requests_planned == 12
        assert job.requests_failed == 1
        assert job.items_created == 30
        assert job.items_updated == 10
        assert job.price_points_created == 40
        assert job.completed_at is not None
        scraper_service.run_source.assert_awaited_once_with("metro")

    async def test_failed_run_is_recorded(self, session_factory, test_db):
        scraper_service = AsyncMock()
        scraper_service.run_source.side_effect = RuntimeError("database gone")
        scheduler = ScraperScheduler(session_factory, scraper_service=scraper_service)

        job_id = await scheduler.run_source_scrape("mega-image")

        job = await test_db.get(ScraperJob, job_id)
        assert job.status == "failed"
        assert job.error_message == "database gone"
        assert "RuntimeError" in job.error_traceback

    async def test_wrapper_does_not_raise(self, session_factory):
        scheduler = ScraperScheduler(session_factory, scraper_service=AsyncMock())

        with patch.object(scheduler, "run_source_scrape", AsyncMock(side_effect=RuntimeError("boom"))):
            await scheduler._run_source_scrape_wrapper("metro")

    def test_load_and_remove_source_jobs(self, session_factory):
        scheduler = ScraperScheduler(session_factory, scraper_service=AsyncMock())

        with patch.object(settings, "ENABLED_SOURCES", "mega-image, metro"):
            assert scheduler.load_source_jobs() == 2

        status = scheduler.get_jobs_status()
        assert set(status) == {"mega-image", "metro"}
        assert status["metro"]["job_id"] == "scrape_metro"

        assert scheduler.add_source_job("metro") is None
        assert scheduler.remove_source_job("metro") is True
        assert scheduler.remove_source_job("metro") is False
        assert set(scheduler.get_jobs_status()) == {"mega-image"}
        assert not scheduler.is_running()


# ============================================================================
# TESTS: SETTINGS
# ============================================================================

class TestSettings:
    """Tests for environment-driven configuration."""

    def test_enabled_sources_parsing(self):
        assert Settings(ENABLED_SOURCES=" metro , ,mega-image ").get_enabled_sources() == ["metro", "mega-image"]
        assert Settings(ENABLED_SOURCES="").get_enabled_sources() == []

    def test_database_url_gets_async_driver(self):
        assert Settings(DATABASE_URL="postgres://u:p@db/archive").DATABASE_URL == "postgresql+asyncpg://u:p@db/archive"
        assert Settings(DATABASE_URL="postgresql://u:p@db/archive").DATABASE_URL == "postgresql+asyncpg://u:p@db/archive"
        assert Settings(DATABASE_URL="sqlite+aiosqlite:///archive.db").DATABASE_URL == "sqlite+aiosqlite:///archive.db"

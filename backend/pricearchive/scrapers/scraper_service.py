"""Scraper orchestration service.

Drives one source through a full run: plan the requests, fetch them all
through the shared fetcher, interpret every successful response, and only
then reconcile the collected products into the archive in one batch.
Nothing is written to products or price points before every
interpretation task has finished.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricearchive.core.exceptions import InterpretationError
from pricearchive.scrapers.base import CanonicalProduct, RequestDescriptor, SourceAdapter
from pricearchive.scrapers.entity_registry import EntityKind, EntityRef, EntityRegistry
from pricearchive.scrapers.factory import SourceFactory, get_source_factory
from pricearchive.scrapers.fetcher import Fetcher, FetchResult, get_fetcher
from pricearchive.services.product_service import ProductService, hour_bucket

logger = structlog.get_logger(__name__)


class ScraperService:
    """Service orchestrating source adapters, the fetcher and reconciliation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fetcher: Optional[Fetcher] = None,
        source_factory: Optional[SourceFactory] = None,
    ):
        """Initialize scraper service.

        Args:
            session_factory: Factory for registry and reconcile sessions
            fetcher: Shared fetcher (defaults to the process-wide one)
            source_factory: Adapter registry (defaults to the global one)
        """
        self.session_factory = session_factory
        self.fetcher = fetcher or get_fetcher()
        self.source_factory = source_factory or get_source_factory()
        self.logger = logger.bind(service="scraper_service")

    async def run_source(
        self,
        source_slug: str,
        as_of: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """Run one complete scrape of a source.

        Args:
            source_slug: Source identifier (e.g., "mega-image", "metro")
            as_of: Observation time for the price points (default: now)

        Returns:
            Dict with run statistics:
                - requests_planned: Page/batch requests planned
                - requests_failed: Requests that failed after retries
                - responses_rejected: Responses the adapter could not interpret
                - items_found: Canonical products interpreted
                - plus the reconcile statistics (products_created, ...)

        Raises:
            SourceNotFoundError: If no adapter is registered for the slug
            ReconciliationError: If the final batch cannot be committed
        """
        adapter = self.source_factory.create_source(source_slug)
        registry = EntityRegistry(self.session_factory)
        run_logger = self.logger.bind(source=source_slug)

        started = datetime.now(timezone.utc)
        run_logger.info("source_run_started")

        plan = await adapter.plan_requests(self.fetcher)

        # Reference rows for the store and every planned category are settled
        # up front; interpretation tasks then only create manufacturers
        await registry.get_or_create(EntityKind.STORE, adapter.store_name)
        jobs: List[Tuple[EntityRef, RequestDescriptor]] = []
        for category_requests in plan:
            if not category_requests.requests:
                run_logger.warning("category_has_no_requests", category=category_requests.category_name)
                continue
            category = await registry.get_or_create(EntityKind.CATEGORY, category_requests.category_name)
            jobs.extend((category, request) for request in category_requests.requests)

        results = await self.fetcher.fetch_all([request for _, request in jobs])

        stats: Dict[str, int] = {
            "requests_planned": len(jobs),
            "requests_failed": sum(1 for result in results if not result.ok),
            "responses_rejected": 0,
            "items_found": 0,
        }

        batches = await asyncio.gather(*(
            self._interpret(adapter, result, category, registry)
            for (category, _), result in zip(jobs, results)
            if result.ok
        ))

        candidates: List[CanonicalProduct] = []
        for batch in batches:
            if batch is None:
                stats["responses_rejected"] += 1
                continue
            candidates.extend(batch)
        stats["items_found"] = len(candidates)

        run_logger.info(
            "source_interpretation_complete",
            requests_planned=stats["requests_planned"],
            requests_failed=stats["requests_failed"],
            responses_rejected=stats["responses_rejected"],
            items_found=stats["items_found"],
        )

        async with self.session_factory() as session:
            product_service = ProductService(session, registry)
            stats.update(await product_service.reconcile(candidates, as_of=hour_bucket(as_of or started)))

        duration = (datetime.now(timezone.utc) - started).total_seconds()
        run_logger.info("source_run_complete", duration_seconds=round(duration, 2), **stats)
        return stats

    async def run_sources(self, source_slugs: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Run several sources concurrently.

        A failing source does not affect the others; its entry holds an
        ``error`` message instead of statistics.
        """
        slugs = list(dict.fromkeys(source_slugs))
        outcomes = await asyncio.gather(
            *(self.run_source(slug) for slug in slugs),
            return_exceptions=True,
        )

        results: Dict[str, Dict[str, Any]] = {}
        for slug, outcome in zip(slugs, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                self.logger.error(
                    "source_run_failed",
                    source=slug,
                    error=str(outcome),
                    exc_info=outcome,
                )
                results[slug] = {"error": str(outcome)}
            else:
                results[slug] = outcome
        return results

    async def _interpret(
        self,
        adapter: SourceAdapter,
        result: FetchResult,
        category: EntityRef,
        registry: EntityRegistry,
    ) -> Optional[List[CanonicalProduct]]:
        """Interpret one response; None when the response is rejected as a whole."""
        try:
            return await adapter.interpret(result.json(), category, registry)
        except (InterpretationError, ValueError) as e:
            self.logger.warning(
                "response_rejected",
                source=adapter.source_slug,
                category=category.name,
                url=result.request.url,
                error=str(e),
            )
            return None

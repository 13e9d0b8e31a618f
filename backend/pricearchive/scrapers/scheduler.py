"""APScheduler-based scraping scheduler.

This module provides a background job scheduler that runs a full scrape
of every enabled source at a configurable interval and records each run
in the scraper_jobs table.
"""

import traceback
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pricearchive.config import settings
from pricearchive.db.utils import session_scope
from pricearchive.models.scraper_job import ScraperJob
from pricearchive.scrapers.scraper_service import ScraperService

logger = structlog.get_logger(__name__)


class ScraperScheduler:
    """Manages periodic scraping jobs using APScheduler.

    This scheduler:
    - Starts and stops background scraping jobs
    - Staggers first runs so sources do not all fire at once
    - Records each run to the scraper_jobs table
    - Keeps running when a single job fails
    """

    STAGGER_SECONDS = 30

    def __init__(
        self,
        db_session_factory: async_sessionmaker[AsyncSession],
        scraper_service: Optional[ScraperService] = None,
    ):
        """Initialize scraper scheduler.

        Args:
            db_session_factory: Async session factory for database access
            scraper_service: Orchestrator to run; built on the factory if omitted
        """
        self.db_session_factory = db_session_factory
        self.scraper_service = scraper_service or ScraperService(db_session_factory)
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.logger = logger.bind(service="scraper_scheduler")
        self._job_ids: Dict[str, str] = {}  # source slug -> job id

    def start(self) -> None:
        """Start the scheduler.

        Does not add jobs; call add_source_job() or load_source_jobs().
        """
        if not self.scheduler.running:
            self.scheduler.start()
            self.logger.info("scheduler_started")
        else:
            self.logger.warning("scheduler_already_running")

    def stop(self) -> None:
        """Stop the scheduler, waiting for running jobs to finish."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            self.logger.info("scheduler_stopped")
        else:
            self.logger.warning("scheduler_not_running")

    def load_source_jobs(self) -> int:
        """Schedule a job for every source in ENABLED_SOURCES.

        Returns:
            Number of jobs scheduled
        """
        sources = settings.get_enabled_sources()
        self.logger.info("loading_source_jobs", sources=sources)

        jobs_added = 0
        for idx, source_slug in enumerate(sources):
            job = self.add_source_job(
                source_slug=source_slug,
                interval_minutes=settings.SCRAPE_INTERVAL_MINUTES,
                offset_seconds=idx * self.STAGGER_SECONDS,
            )
            if job is not None:
                jobs_added += 1

        self.logger.info("source_jobs_loaded", count=jobs_added)
        return jobs_added

    def add_source_job(
        self,
        source_slug: str,
        interval_minutes: int = 60,
        offset_seconds: int = 0,
    ) -> Optional[Job]:
        """Add a periodic scraping job for a source.

        Args:
            source_slug: Source identifier (e.g., "metro")
            interval_minutes: How often to run the job
            offset_seconds: Initial delay before first run (for staggering)

        Returns:
            APScheduler Job instance or None if already scheduled
        """
        if source_slug in self._job_ids:
            self.logger.warning("job_already_exists", source=source_slug)
            return None

        trigger = IntervalTrigger(
            minutes=interval_minutes,
            start_date=datetime.now(timezone.utc),
            timezone="UTC",
        )

        job = self.scheduler.add_job(
            func=self._run_source_scrape_wrapper,
            trigger=trigger,
            args=[source_slug],
            id=f"scrape_{source_slug}",
            name=f"Scrape {source_slug}",
            replace_existing=True,
            max_instances=1,  # Prevent overlapping runs of the same source
        )
        self._job_ids[source_slug] = job.id

        if offset_seconds > 0:
            next_run = datetime.now(timezone.utc) + timedelta(seconds=offset_seconds)
            job.modify(next_run_time=next_run)

        self.logger.info(
            "source_job_added",
            source=source_slug,
            interval_minutes=interval_minutes,
            offset_seconds=offset_seconds,
        )
        return job

    def remove_source_job(self, source_slug: str) -> bool:
        """Remove a source's scraping job.

        Returns:
            True if job was removed, False if not found
        """
        job_id = self._job_ids.get(source_slug)
        if not job_id:
            self.logger.warning("job_not_found", source=source_slug)
            return False

        self.scheduler.remove_job(job_id)
        del self._job_ids[source_slug]

        self.logger.info("source_job_removed", source=source_slug)
        return True

    async def _run_source_scrape_wrapper(self, source_slug: str) -> None:
        """Entry point APScheduler calls; a failed job must not stop the scheduler."""
        try:
            await self.run_source_scrape(source_slug)
        except Exception as e:
            self.logger.error(
                "scrape_job_failed",
                source=source_slug,
                error=str(e),
                exc_info=True,
            )

    async def run_source_scrape(self, source_slug: str) -> UUID:
        """Execute a single source run and record it.

        This method:
        1. Creates a ScraperJob record with status="running"
        2. Runs the source via ScraperService
        3. Updates the record with statistics, or with the error on failure

        Returns:
            ID of the ScraperJob record
        """
        self.logger.info("starting_scrape_job", source=source_slug)

        start_time = datetime.now(timezone.utc)
        async with session_scope(self.db_session_factory) as db:
            job_record = ScraperJob(source=source_slug, status="running", started_at=start_time)
            db.add(job_record)
            await db.flush()
            job_id = job_record.id

        updates: Dict[str, Any]
        try:
            stats = await self.scraper_service.run_source(source_slug)
        except Exception as e:
            updates = {
                "status": "failed",
                "error_message": str(e),
                "error_traceback": traceback.format_exc(),
            }
            self.logger.error(
                "scrape_job_failed",
                source=source_slug,
                job_id=str(job_id),
                error=str(e),
                exc_info=True,
            )
        else:
            updates = {
                "status": "completed",
                "requests_planned": stats.get("requests_planned", 0),
                "requests_failed": stats.get("requests_failed", 0),
                "items_found": stats.get("items_found", 0),
                "items_created": stats.get("products_created", 0),
                "items_updated": stats.get("products_updated", 0),
                "price_points_created": stats.get("price_points_created", 0),
                "errors": stats.get("errors", 0),
            }
            self.logger.info("scrape_job_completed", source=source_slug, job_id=str(job_id), **stats)

        end_time = datetime.now(timezone.utc)
        updates["completed_at"] = end_time
        updates["duration_seconds"] = Decimal(str(round((end_time - start_time).total_seconds(), 2)))

        async with session_scope(self.db_session_factory) as db:
            job_record = await db.get(ScraperJob, job_id)
            for field, value in updates.items():
                setattr(job_record, field, value)

        return job_id

    def get_jobs_status(self) -> Dict[str, Dict[str, Optional[str]]]:
        """Get status of all scheduled jobs, keyed by source slug."""
        jobs = {}
        for source_slug, job_id in self._job_ids.items():
            job = self.scheduler.get_job(job_id)
            if job:
                # Jobs added before start() have no next_run_time yet
                next_run = getattr(job, "next_run_time", None)
                jobs[source_slug] = {
                    "job_id": job_id,
                    "next_run": next_run.isoformat() if next_run else None,
                    "trigger": str(job.trigger),
                }
        return jobs

    def is_running(self) -> bool:
        return self.scheduler.running

"""Price archive worker entry point.

Runs the scrape scheduler until SIGINT/SIGTERM.
"""

import asyncio
import signal

import structlog

from pricearchive.config import settings
from pricearchive.core.logging import configure_logging
from pricearchive.db.session import async_session_factory, engine
from pricearchive.db.utils import check_database_health, init_models
from pricearchive.scrapers.fetcher import get_fetcher
from pricearchive.scrapers.register_sources import register_all_sources
from pricearchive.scrapers.scheduler import ScraperScheduler

logger = structlog.get_logger(__name__)


async def run_worker() -> None:
    """Worker lifecycle: startup, wait for a stop signal, shutdown."""
    logger.info("worker_starting", environment=settings.ENVIRONMENT, debug=settings.DEBUG)

    health = await check_database_health(async_session_factory)
    if not health["healthy"]:
        logger.error("database_unavailable", error=health.get("error"))
        raise SystemExit(1)

    # Safe for fresh deployments; existing tables are left untouched
    await init_models(engine)
    logger.info("database_tables_verified")

    register_all_sources()

    scheduler = ScraperScheduler(async_session_factory)
    scheduler.start()
    jobs_count = scheduler.load_source_jobs()
    logger.info("worker_started", jobs=jobs_count)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    try:
        await stop_event.wait()
    finally:
        logger.info("worker_stopping")
        scheduler.stop()
        await get_fetcher().aclose()
        await engine.dispose()
        logger.info("worker_stopped")


def main() -> None:
    configure_logging(settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()

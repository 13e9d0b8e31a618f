"""Manual scraper runner for one-off archive runs.

Runs one source (or every registered source) end to end against the
configured database and prints the run statistics.

Usage:
    python scripts/run_scraper.py --source metro
    python scripts/run_scraper.py --all
"""

import argparse
import asyncio
import os
import sys
from typing import Any, Dict, List

# Add backend to path so we can import pricearchive modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from pricearchive.config import settings
from pricearchive.core.logging import configure_logging
from pricearchive.db.session import async_session_factory, engine
from pricearchive.db.utils import init_models
from pricearchive.scrapers.fetcher import get_fetcher
from pricearchive.scrapers.register_sources import register_all_sources
from pricearchive.scrapers.scraper_service import ScraperService


async def run_scraper(source_slugs: List[str]) -> Dict[str, Dict[str, Any]]:
    """Run the given sources concurrently and print their statistics."""
    await init_models(engine)

    service = ScraperService(async_session_factory)
    try:
        results = await service.run_sources(source_slugs)
    finally:
        await get_fetcher().aclose()
        await engine.dispose()

    for slug, stats in results.items():
        print(f"\n{'='*60}")
        print(f"  {slug}")
        print(f"{'='*60}")
        if "error" in stats:
            print(f"  FAILED: {stats['error']}")
            continue
        for key, value in stats.items():
            print(f"  {key:<24} {value}")
    print()
    return results


def main():
    """Parse arguments and run the scraper."""
    configure_logging(settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
    factory = register_all_sources()

    parser = argparse.ArgumentParser(
        description="Run a price archive source once",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_scraper.py --source mega-image
  python scripts/run_scraper.py --all
        """,
    )
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument(
        "--source",
        choices=factory.get_registered_sources(),
        help="Source slug to run",
    )
    group.add_argument(
        "--all",
        action="store_true",
        help="Run every registered source concurrently",
    )
    args = parser.parse_args()

    slugs = factory.get_registered_sources() if args.all else [args.source]
    results = asyncio.run(run_scraper(slugs))

    if any("error" in stats for stats in results.values()):
        sys.exit(1)


if __name__ == "__main__":
    main()

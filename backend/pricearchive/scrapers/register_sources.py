"""Register all source adapters with the factory.

Imported during worker and script startup.
"""

from typing import Optional

import structlog

from pricearchive.scrapers.adapters import MegaImageAdapter, MetroAdapter
from pricearchive.scrapers.factory import SourceFactory, get_source_factory

logger = structlog.get_logger(__name__)


def register_all_sources(factory: Optional[SourceFactory] = None) -> SourceFactory:
    """Register every available adapter with the (global) factory."""
    factory = factory or get_source_factory()

    for adapter_class in (MegaImageAdapter, MetroAdapter):
        factory.register_source(adapter_class.source_slug, adapter_class)

    logger.info(
        "all_sources_registered",
        count=len(factory.get_registered_sources()),
        sources=factory.get_registered_sources(),
    )
    return factory

"""Factory for registering and creating source adapter instances."""

from typing import Callable, Dict, List

import structlog

from pricearchive.core.exceptions import SourceNotFoundError
from pricearchive.scrapers.base import SourceAdapter


logger = structlog.get_logger(__name__)

SourceBuilder = Callable[[], SourceAdapter]


class SourceFactory:
    """Registry of source adapters keyed by source slug.

    Adapters are stateless between runs, so a fresh instance is built for
    every run from the registered class (or zero-argument callable).
    """

    def __init__(self):
        self._registry: Dict[str, SourceBuilder] = {}

    def register_source(self, source_slug: str, builder: SourceBuilder) -> None:
        """Register an adapter class for a source.

        Args:
            source_slug: Source slug identifier (e.g., "metro")
            builder: Adapter class or zero-argument callable returning one

        Raises:
            ValueError: If builder is not callable
        """
        if not callable(builder):
            raise ValueError(f"Source builder must be callable: {builder!r}")

        self._registry[source_slug] = builder
        logger.debug("source_registered", source=source_slug, builder=getattr(builder, "__name__", repr(builder)))

    def create_source(self, source_slug: str) -> SourceAdapter:
        """Create an adapter instance.

        Raises:
            SourceNotFoundError: If no adapter is registered for the slug
            TypeError: If the built object does not satisfy SourceAdapter
        """
        builder = self._registry.get(source_slug)
        if builder is None:
            logger.warning("source_not_found", source=source_slug)
            raise SourceNotFoundError(source_slug)

        adapter = builder()
        if not isinstance(adapter, SourceAdapter):
            raise TypeError(f"{type(adapter).__name__} does not implement SourceAdapter")

        logger.debug("source_created", source=source_slug, adapter=type(adapter).__name__)
        return adapter

    def get_registered_sources(self) -> List[str]:
        return list(self._registry.keys())

    def has_source(self, source_slug: str) -> bool:
        return source_slug in self._registry


# Global factory instance
source_factory = SourceFactory()


def get_source_factory() -> SourceFactory:
    """Get the global source factory instance."""
    return source_factory

"""Scraper system for archiving grocery prices from retail sources.

This package provides:
- The source adapter protocol and canonical product records
- The shared bounded-concurrency fetcher
- Utility modules for rate limiting, retries and data normalization
- Factory for registering and creating adapter instances
"""

from .base import (
    CanonicalProduct,
    CategoryRequests,
    RequestDescriptor,
    SourceAdapter,
)
from .factory import SourceFactory, source_factory, get_source_factory

__all__ = [
    # Adapter contract
    "SourceAdapter",
    # Data structures
    "CanonicalProduct",
    "CategoryRequests",
    "RequestDescriptor",
    # Factory
    "SourceFactory",
    "source_factory",
    "get_source_factory",
]

"""Scraper utilities for rate limiting, retries and data normalization."""

from .rate_limiter import DomainRateLimiter, TokenBucket
from .normalizer import (
    DEFAULT_UNIT,
    QuantityUnit,
    capitalize_first,
    extract_quantity_and_unit,
    parse_price,
    unit_price,
)
from .retry import http_retrying, is_transient_http_error, RETRYABLE_STATUS_CODES


__all__ = [
    # Rate limiting
    "DomainRateLimiter",
    "TokenBucket",
    # Normalization
    "DEFAULT_UNIT",
    "QuantityUnit",
    "capitalize_first",
    "extract_quantity_and_unit",
    "parse_price",
    "unit_price",
    # Retry
    "http_retrying",
    "is_transient_http_error",
    "RETRYABLE_STATUS_CODES",
]

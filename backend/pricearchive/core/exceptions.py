"""Custom exception classes for the application."""

from typing import Optional


class PriceArchiveException(Exception):
    """Base exception for all price archive errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(self.message)


class SourceNotFoundError(PriceArchiveException):
    """Raised when no adapter is registered for a source slug."""

    def __init__(self, source: str):
        self.source = source
        super().__init__(f"No source adapter registered for '{source}'")


class FetchError(PriceArchiveException):
    """A single request failed: network error, timeout or non-success status."""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        super().__init__(f"Fetch failed for {url}: {message}")


class InterpretationError(PriceArchiveException):
    """A response or a single item could not be mapped to a canonical product."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"Interpretation error for {source}: {message}")


class EntityCreationConflict(PriceArchiveException):
    """Raised when a get-or-create race cannot be resolved by re-reading."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"Could not resolve {kind} '{name}' after repeated conflicts")


class ReconciliationError(PriceArchiveException):
    """Raised when a reconcile batch cannot be committed."""

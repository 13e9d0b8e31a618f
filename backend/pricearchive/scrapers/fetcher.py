"""Bounded-concurrency HTTP fetcher shared by all source adapters.

Every request goes through one process-wide semaphore, so the configured
concurrency limit caps in-flight requests across all sources combined.
Failures never escape fetch_all: each descriptor gets exactly one
FetchResult carrying either the body or the cause of failure.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence
from urllib.parse import urlparse

import httpx
import structlog

from pricearchive.config import settings
from pricearchive.core.exceptions import FetchError
from pricearchive.scrapers.base import RequestDescriptor
from pricearchive.scrapers.utils.rate_limiter import DomainRateLimiter
from pricearchive.scrapers.utils.retry import http_retrying


logger = structlog.get_logger(__name__)


@dataclass
class FetchResult:
    """Outcome of one request: a body on success, a FetchError otherwise."""

    request: RequestDescriptor
    body: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.body is not None

    def json(self) -> Any:
        """Decode the body as JSON.

        Raises:
            ValueError: If the fetch failed or the body is not valid JSON
        """
        if not self.ok:
            raise ValueError(f"No body available for {self.request.url}")
        return json.loads(self.body)


class Fetcher:
    """Executes batches of GET requests with bounded parallelism."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        max_concurrency: Optional[int] = None,
        rate_limiter: Optional[DomainRateLimiter] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize the fetcher.

        Args:
            client: Shared httpx client; one is created (and owned) if omitted
            max_concurrency: Cap on in-flight requests (FETCH_MAX_CONCURRENCY)
            rate_limiter: Optional per-domain limiter awaited before taking a slot
            max_attempts: Attempts per request for transient failures
            backoff_seconds: Exponential backoff multiplier between attempts
            timeout: Per-request timeout in seconds
        """
        self.max_concurrency = max(1, max_concurrency or settings.FETCH_MAX_CONCURRENCY)
        self.max_attempts = max_attempts or settings.FETCH_MAX_ATTEMPTS
        self.backoff_seconds = (
            settings.FETCH_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self.rate_limiter = rate_limiter

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.FETCH_TIMEOUT_SECONDS,
            headers={"User-Agent": settings.USER_AGENT, "Accept": "application/json"},
            follow_redirects=True,
        )
        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self.logger = logger.bind(service="fetcher")

    async def fetch_all(self, requests: Sequence[RequestDescriptor]) -> List[FetchResult]:
        """Fetch all requests concurrently.

        Returns:
            One FetchResult per descriptor, in input order. A failed request
            never cancels its siblings; cancelling the caller cancels all.
        """
        if not requests:
            return []

        results = await asyncio.gather(*(self.fetch(request) for request in requests))

        failed = sum(1 for r in results if not r.ok)
        self.logger.info(
            "fetch_batch_complete",
            requests=len(requests),
            succeeded=len(requests) - failed,
            failed=failed,
        )
        return list(results)

    async def fetch(self, request: RequestDescriptor) -> FetchResult:
        """Fetch a single request, retrying transient failures.

        Never raises (except on cancellation); failures are returned as a
        FetchResult with ``error`` set.
        """
        try:
            async for attempt in http_retrying(self.max_attempts, self.backoff_seconds):
                with attempt:
                    response = await self._send(request)
            return FetchResult(
                request=request,
                body=response.text,
                status_code=response.status_code,
            )
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            error = FetchError(request.url, f"HTTP {status_code}", status_code=status_code)
        except httpx.TimeoutException as e:
            error = FetchError(request.url, f"timeout: {e!r}")
        except httpx.HTTPError as e:
            error = FetchError(request.url, f"network error: {e!r}")
        except Exception as e:
            error = FetchError(request.url, f"unexpected error: {e!r}")

        self.logger.warning(
            "fetch_failed",
            url=request.url,
            status_code=error.status_code,
            error=error.message,
        )
        return FetchResult(request=request, status_code=error.status_code, error=error)

    async def _send(self, request: RequestDescriptor) -> httpx.Response:
        # Wait for the domain's token before taking a slot, so a throttled
        # host never holds slots that other hosts could use
        if self.rate_limiter:
            await self.rate_limiter.acquire(urlparse(request.url).netloc)

        async with self._semaphore:
            self.logger.debug("fetching_url", url=request.url, params=len(request.params))
            response = await self._client.get(
                request.url,
                params=list(request.params) or None,
                headers=dict(request.headers) or None,
            )
            response.raise_for_status()
            return response

    async def aclose(self) -> None:
        """Close the underlying client if this fetcher created it."""
        if self._owns_client:
            await self._client.aclose()


_fetcher: Optional[Fetcher] = None


def get_fetcher() -> Fetcher:
    """Get the process-wide fetcher, creating it on first use.

    Returns:
        Fetcher instance shared by every source run in this process
    """
    global _fetcher
    if _fetcher is None:
        _fetcher = Fetcher(
            rate_limiter=DomainRateLimiter() if settings.RATE_LIMIT_ENABLED else None,
        )
    return _fetcher

"""Retry utilities with exponential backoff for HTTP requests."""

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)


logger = structlog.get_logger(__name__)

# Statuses worth retrying; every other non-success status fails immediately
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def is_transient_http_error(exc: BaseException) -> bool:
    """Return True for failures that may succeed on a later attempt."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "http_retry_scheduled",
        attempt=retry_state.attempt_number,
        sleep_seconds=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
        error=str(exc),
    )


def http_retrying(max_attempts: int = 3, backoff_seconds: float = 1.0) -> AsyncRetrying:
    """Build an AsyncRetrying controller for a single HTTP request.

    Usage:
        async for attempt in http_retrying(3, 1.0):
            with attempt:
                response = await client.get(url)
                response.raise_for_status()

    Args:
        max_attempts: Total attempts including the first one
        backoff_seconds: Exponential backoff multiplier (capped at 30s)
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_exponential(multiplier=backoff_seconds, min=backoff_seconds, max=30),
        retry=retry_if_exception(is_transient_http_error),
        before_sleep=_log_before_sleep,
        reraise=True,
    )

"""Token bucket rate limiter for per-domain rate limiting."""

import asyncio
import time
from typing import Dict


class TokenBucket:
    """Token bucket algorithm implementation for rate limiting.

    The bucket starts full and refills at a constant rate.
    Each request consumes one token. If no tokens are available,
    the request waits until tokens are refilled. Waiters are served
    one at a time, in arrival order.
    """

    def __init__(self, rate: float, capacity: float):
        """Initialize token bucket.

        Args:
            rate: Tokens per second (e.g., 1.0 = 60 RPM)
            capacity: Maximum tokens in bucket (burst capacity)
        """
        self.rate = rate  # tokens per second
        self.capacity = capacity
        self.tokens = capacity
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    @classmethod
    def from_rpm(cls, rpm: float) -> "TokenBucket":
        """Build a bucket for a requests-per-minute limit.

        Burst capacity is 10% of the per-minute limit, never below 2.

        Args:
            rpm: Requests per minute limit

        Returns:
            Full TokenBucket refilling at rpm / 60 tokens per second
        """
        if rpm <= 0:
            raise ValueError("rpm must be positive")
        return cls(rate=rpm / 60.0, capacity=max(2.0, rpm / 10.0))

    @property
    def rpm(self) -> float:
        return self.rate * 60.0

    def _refill(self) -> None:
        """Refill tokens based on elapsed time since last refill."""
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens from the bucket, waiting if necessary.

        Args:
            tokens: Number of tokens to acquire (default 1.0)
        """
        async with self._lock:
            while True:
                self._refill()
                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return
                wait_time = (tokens - self.tokens) / self.rate
                await asyncio.sleep(wait_time)


class DomainRateLimiter:
    """Per-domain rate limiter using token bucket algorithm.

    Each source host gets its own bucket so one slow retailer API does not
    throttle the others. The Fetcher's semaphore still caps the total
    number of in-flight requests across all hosts; the Fetcher waits for a
    token before it takes a semaphore slot.
    """

    # Rate limits in requests per minute (RPM) for known source hosts
    DOMAIN_LIMITS_RPM = {
        "api.mega-image.ro": 120,
        "produse.metro.ro": 90,
    }

    # Default rate limit for unknown hosts
    DEFAULT_RPM = 60

    def __init__(self):
        self._buckets: Dict[str, TokenBucket] = {}

    def _get_bucket(self, domain: str) -> TokenBucket:
        if domain not in self._buckets:
            rpm = self.DOMAIN_LIMITS_RPM.get(domain, self.DEFAULT_RPM)
            self._buckets[domain] = TokenBucket.from_rpm(rpm)
        return self._buckets[domain]

    async def acquire(self, domain: str, tokens: float = 1.0) -> None:
        """Acquire rate limit token for a domain.

        Blocks until the domain's bucket allows the request.

        Args:
            domain: Host name to rate limit (e.g., "produse.metro.ro")
            tokens: Number of tokens to acquire (default 1.0)
        """
        await self._get_bucket(domain).acquire(tokens)

    def set_custom_limit(self, domain: str, rpm: int) -> None:
        """Set a custom rate limit for a domain, replacing any existing bucket."""
        self._buckets[domain] = TokenBucket.from_rpm(rpm)

    def get_current_rate(self, domain: str) -> float:
        """Current rate limit for a domain in requests per minute."""
        return self._get_bucket(domain).rpm

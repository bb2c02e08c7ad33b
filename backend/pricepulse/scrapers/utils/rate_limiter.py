"""Token bucket rate limiter for per-site throttling of adapter calls."""

import asyncio
import time
from typing import Dict, Optional

import structlog

from pricepulse.config import Settings

logger = structlog.get_logger(__name__)


class TokenBucket:
    """Token bucket with reservation semantics.

    The bucket starts full and refills at a constant rate. A caller that
    finds it empty reserves its token anyway (the balance goes negative)
    and sleeps until that token would have been refilled, so waiters are
    served in arrival order without holding the lock while they sleep.
    """

    def __init__(self, rate: float, capacity: float):
        """Initialize token bucket.

        Args:
            rate: Tokens per second (e.g., 1.0 = 60 RPM)
            capacity: Maximum tokens in bucket (burst capacity)
        """
        if rate <= 0:
            raise ValueError("rate must be positive")
        self.rate = rate
        self.capacity = capacity
        self.tokens = capacity
        self.last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> float:
        """Take tokens from the bucket, sleeping if it is empty.

        Args:
            tokens: Number of tokens to acquire (default 1.0)

        Returns:
            Seconds spent waiting
        """
        async with self._lock:
            self._refill()
            self.tokens -= tokens
            wait_time = -self.tokens / self.rate if self.tokens < 0 else 0.0

        if wait_time > 0:
            await asyncio.sleep(wait_time)
        return wait_time


class SiteRateLimiter:
    """Per-site rate limiter, independent of worker concurrency.

    Each site gets its own token bucket. Limits come from settings
    (``SITE_RATE_LIMIT_RPM`` default, ``SITE_RATE_LIMITS`` overrides).
    """

    def __init__(self, default_rpm: int = 20, limits: Optional[Dict[str, int]] = None):
        self.default_rpm = default_rpm
        self._limits: Dict[str, int] = dict(limits or {})
        self._buckets: Dict[str, TokenBucket] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "SiteRateLimiter":
        return cls(
            default_rpm=settings.SITE_RATE_LIMIT_RPM,
            limits=settings.get_site_rate_limits(),
        )

    @staticmethod
    def _make_bucket(rpm: int) -> TokenBucket:
        rate = rpm / 60.0
        # Capacity allows small bursts (10% of RPM, min 1)
        capacity = max(1.0, rpm / 10.0)
        return TokenBucket(rate=rate, capacity=capacity)

    def _get_bucket(self, site: str) -> TokenBucket:
        if site not in self._buckets:
            self._buckets[site] = self._make_bucket(self.get_rpm(site))
        return self._buckets[site]

    async def acquire(self, site: str, tokens: float = 1.0) -> None:
        """Block until the site's limit allows one more request.

        Args:
            site: Site slug to rate limit
            tokens: Number of tokens to acquire (default 1.0)
        """
        waited = await self._get_bucket(site).acquire(tokens)
        if waited > 0:
            logger.debug("rate_limit_wait", site=site, waited_seconds=round(waited, 3))

    def set_limit(self, site: str, rpm: int) -> None:
        """Override the limit for a site, replacing any existing bucket."""
        self._limits[site] = rpm
        self._buckets[site] = self._make_bucket(rpm)

    def get_rpm(self, site: str) -> int:
        return self._limits.get(site, self.default_rpm)

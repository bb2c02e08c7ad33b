"""Tests for the per-site token bucket rate limiter."""

from unittest.mock import AsyncMock, patch

import pytest

from pricepulse.scrapers.utils.rate_limiter import SiteRateLimiter, TokenBucket


@pytest.fixture
def sleep():
    with patch("pricepulse.scrapers.utils.rate_limiter.asyncio.sleep", new_callable=AsyncMock) as mocked:
        yield mocked


class TestTokenBucket:
    async def test_burst_within_capacity_does_not_wait(self, sleep):
        bucket = TokenBucket(rate=1.0, capacity=3)

        waits = [await bucket.acquire() for _ in range(3)]

        assert waits == [0.0, 0.0, 0.0]
        sleep.assert_not_awaited()

    async def test_empty_bucket_reserves_in_arrival_order(self, sleep):
        bucket = TokenBucket(rate=2.0, capacity=1)
        await bucket.acquire()

        first = await bucket.acquire()
        second = await bucket.acquire()

        assert first == pytest.approx(0.5, abs=0.05)
        assert second == pytest.approx(1.0, abs=0.05)
        assert sleep.await_count == 2

    def test_rate_must_be_positive(self):
        with pytest.raises(ValueError):
            TokenBucket(rate=0, capacity=1)


class TestSiteRateLimiter:
    async def test_sites_have_independent_buckets(self, sleep):
        limiter = SiteRateLimiter(default_rpm=6)

        await limiter.acquire("noon")
        await limiter.acquire("amazon")
        sleep.assert_not_awaited()

        await limiter.acquire("noon")
        sleep.assert_awaited_once()
        assert sleep.await_args.args[0] == pytest.approx(10.0, abs=0.1)

    def test_overrides_and_set_limit(self):
        limiter = SiteRateLimiter(default_rpm=20, limits={"amazon": 5})

        assert limiter.get_rpm("amazon") == 5
        assert limiter.get_rpm("noon") == 20

        limiter.set_limit("noon", 120)
        assert limiter.get_rpm("noon") == 120
        assert limiter._get_bucket("noon").capacity == 12

    def test_from_settings(self, settings):
        settings.SITE_RATE_LIMITS = "Amazon=10, noon=30, broken"
        limiter = SiteRateLimiter.from_settings(settings)

        assert limiter.get_rpm("amazon") == 10
        assert limiter.get_rpm("noon") == 30
        assert limiter.get_rpm("extra") == settings.SITE_RATE_LIMIT_RPM

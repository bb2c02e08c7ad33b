"""Tests for settings parsing and validation."""

import pytest
from pydantic import ValidationError

from pricepulse.config import Settings
from pricepulse.schemas.common import Tier


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


@pytest.mark.parametrize(
    "url,expected",
    [
        ("postgresql://u:p@db:5432/pp", "postgresql+asyncpg://u:p@db:5432/pp"),
        ("postgres://u:p@db:5432/pp", "postgresql+asyncpg://u:p@db:5432/pp"),
        ("sqlite+aiosqlite:///pp.db", "sqlite+aiosqlite:///pp.db"),
    ],
)
def test_database_url_gets_async_driver(url, expected):
    assert make_settings(DATABASE_URL=url).DATABASE_URL == expected


def test_tier_policy_defaults():
    settings = make_settings()

    hot = settings.tier_policy(Tier.HOT)
    assert (hot.freshness_minutes, hot.ttl_seconds, hot.priority) == (30, 3600, 10)
    assert settings.tier_policy("COLD").priority == 1
    assert settings.SEARCH_CACHE_TIER == Tier.WARM


def test_freshness_must_be_shorter_than_ttl():
    with pytest.raises(ValidationError, match="freshness threshold"):
        make_settings(HOT_FRESHNESS_MINUTES=60, HOT_CACHE_TTL_SECONDS=3600)


def test_percentiles_must_be_ordered():
    with pytest.raises(ValidationError, match="percentiles"):
        make_settings(TIER_HOT_PERCENTILE=0.5, TIER_WARM_PERCENTILE=0.2)


def test_list_settings_parse_leniently():
    settings = make_settings(
        POPULAR_QUERIES=" iphone 15 ,, air fryer",
        SCRAPER_FEEDS="Noon|https://api.noon.example/search?q={query},junk",
    )

    assert settings.get_popular_queries() == ["iphone 15", "air fryer"]
    assert settings.get_scraper_feeds() == {"noon": "https://api.noon.example/search?q={query}"}

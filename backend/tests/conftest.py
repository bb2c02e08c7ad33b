"""Pytest configuration and shared fixtures."""

import asyncio
import fnmatch
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from pricepulse.config import Settings
from pricepulse.db.session import Database
from pricepulse.schemas.common import Tier
from pricepulse.scrapers.base import BaseScraperAdapter, RawRecord
from pricepulse.scrapers.orchestrator import ScrapeOrchestrator
from pricepulse.scrapers.registry import AdapterRegistry
from pricepulse.services.cache_service import CacheService
from pricepulse.services.job_queue import JobQueue
from pricepulse.services.metrics import ProductMetricsService
from pricepulse.services.persistence import PersistenceWriter
from pricepulse.services.validation import ValidationPipeline


# ============================================================================
# IN-MEMORY REDIS
# ============================================================================

class InMemoryPipeline:
    """Buffers commands and replays them on execute(), like redis-py."""

    def __init__(self, redis: "InMemoryRedis", transaction: bool = True):
        self.redis = redis
        self.transaction = transaction
        self.commands: List[tuple] = []

    async def __aenter__(self) -> "InMemoryPipeline":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.commands = []

    def _queue(self, name: str, *args, **kwargs) -> "InMemoryPipeline":
        self.commands.append((name, args, kwargs))
        return self

    def get(self, key):
        return self._queue("get", key)

    def set(self, key, value, ex=None):
        return self._queue("set", key, value, ex=ex)

    def delete(self, *keys):
        return self._queue("delete", *keys)

    def incr(self, key):
        return self._queue("incr", key)

    def incrby(self, key, amount):
        return self._queue("incrby", key, amount)

    def expire(self, key, seconds):
        return self._queue("expire", key, seconds)

    async def execute(self) -> List[Any]:
        self.redis._check()
        self.redis.pipelines_executed += 1
        replies = []
        for name, args, kwargs in self.commands:
            replies.append(await getattr(self.redis, name)(*args, **kwargs))
        self.commands = []
        return replies


class InMemoryRedis:
    """Just enough of redis.asyncio.Redis (decode_responses=True) for the tests."""

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.fail = False
        self.closed = False
        self.pipelines_executed = 0

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("Connection refused")

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.store[key] = str(value)
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        deleted = 0
        for key in keys:
            if key in self.store:
                del self.store[key]
                self.ttls.pop(key, None)
                deleted += 1
        return deleted

    async def incrby(self, key, amount):
        self._check()
        value = int(self.store.get(key, 0)) + int(amount)
        self.store[key] = str(value)
        return value

    async def incr(self, key):
        return await self.incrby(key, 1)

    async def expire(self, key, seconds):
        self._check()
        if key not in self.store:
            return False
        self.ttls[key] = seconds
        return True

    async def scan_iter(self, match=None, count=None):
        self._check()
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def ping(self):
        self._check()
        return True

    def pipeline(self, transaction=True):
        return InMemoryPipeline(self, transaction=transaction)

    async def aclose(self):
        self.closed = True


# ============================================================================
# FAKE ADAPTER
# ============================================================================

class FakeAdapter(BaseScraperAdapter):
    """Adapter returning canned records (or raising) and counting calls."""

    def __init__(
        self,
        site: str,
        records: Optional[List[RawRecord]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.site = site
        super().__init__()
        self.records = records or []
        self.error = error
        self.delay = delay
        self.queries: List[str] = []

    async def search(self, query: str) -> List[RawRecord]:
        self.queries.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [dict(record) for record in self.records]


def raw_record(site: str, name: str, price, slug: str, **extra) -> RawRecord:
    """Adapter-shaped record for a product page on example shop domains."""
    record = {
        "site": site,
        "name": name,
        "price": price,
        "url": f"https://www.{site}.example/product/{slug}",
        "image": f"https://cdn.{site}.example/img/{slug}.jpg",
        "currency": "SAR",
    }
    record.update(extra)
    return record


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def anyio_backend():
    """Use asyncio as the async backend for tests."""
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite file; no .env is read."""
    return Settings(
        _env_file=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'pricepulse.db'}",
        REDIS_URL="redis://localhost:6379/15",
        ENVIRONMENT="test",
        SEARCH_CACHE_TIER=Tier.HOT,
        SITE_RATE_LIMIT_RPM=6000,
        RETRY_MAX_ATTEMPTS=3,
        RETRY_BACKOFF_BASE_SECONDS=2.0,
        ADAPTER_TIMEOUT_SECONDS=2.0,
        COLD_PATH_TIMEOUT_SECONDS=3.0,
        REFRESH_BATCH_SIZE=2,
    )


@pytest.fixture
def fake_redis() -> InMemoryRedis:
    return InMemoryRedis()


@pytest.fixture
def cache(settings: Settings, fake_redis: InMemoryRedis) -> CacheService:
    return CacheService(settings.REDIS_URL, client=fake_redis)


@pytest_asyncio.fixture
async def database(settings: Settings):
    """File-backed SQLite database with all tables created."""
    db = Database(settings.DATABASE_URL)
    await db.create_all()
    yield db
    await db.close()


@pytest.fixture
def pipeline(settings: Settings) -> ValidationPipeline:
    return ValidationPipeline(default_currency=settings.DEFAULT_CURRENCY)


@pytest.fixture
def writer(database: Database, cache: CacheService, settings: Settings) -> PersistenceWriter:
    return PersistenceWriter(database, cache, settings)


@pytest.fixture
def metrics(database: Database, cache: CacheService, settings: Settings) -> ProductMetricsService:
    return ProductMetricsService(database, cache, settings)


@pytest.fixture
def queue(database: Database, settings: Settings) -> JobQueue:
    return JobQueue(database, settings)


@pytest.fixture
def make_orchestrator(settings: Settings) -> Callable[..., ScrapeOrchestrator]:
    """Build an orchestrator over the given adapters."""

    def _make(*adapters: BaseScraperAdapter) -> ScrapeOrchestrator:
        registry = AdapterRegistry()
        for adapter in adapters:
            registry.register(adapter)
        return ScrapeOrchestrator(
            registry,
            adapter_timeout=settings.ADAPTER_TIMEOUT_SECONDS,
            overall_timeout=settings.COLD_PATH_TIMEOUT_SECONDS,
        )

    return _make

"""Application wiring.

Every long-lived client is built here once, from one Settings object, and
torn down by ``close()``. Nothing else in the package constructs clients
at import time.
"""

from typing import Optional

import structlog

from pricepulse.config import Settings
from pricepulse.db.session import Database
from pricepulse.scheduler import RefreshScheduler
from pricepulse.scrapers.orchestrator import ScrapeOrchestrator
from pricepulse.scrapers.register_adapters import register_adapters
from pricepulse.scrapers.registry import AdapterRegistry
from pricepulse.scrapers.utils.rate_limiter import SiteRateLimiter
from pricepulse.services.cache_service import CacheService
from pricepulse.services.job_queue import JobQueue
from pricepulse.services.metrics import ProductMetricsService
from pricepulse.services.persistence import PersistenceWriter
from pricepulse.services.refresh_service import RefreshCoordinator, RefreshGuard, RefreshService
from pricepulse.services.search_service import SearchService
from pricepulse.services.validation import ValidationPipeline
from pricepulse.services.worker_pool import WorkerPool

logger = structlog.get_logger(__name__)


class Application:
    """Owns the store, cache, adapters and every service built on them."""

    def __init__(
        self,
        settings: Settings,
        database: Optional[Database] = None,
        cache: Optional[CacheService] = None,
        registry: Optional[AdapterRegistry] = None,
    ):
        """Build the object graph.

        Args:
            settings: Application settings
            database: Pre-built store (tests pass a SQLite one)
            cache: Pre-built cache (tests pass one over a fake client)
            registry: Pre-built adapter registry; defaults to SCRAPER_FEEDS
        """
        self.settings = settings
        self.logger = logger.bind(service="application")

        self.db = database or Database(settings.DATABASE_URL, echo=settings.DEBUG)
        self.cache = cache or CacheService(settings.REDIS_URL)

        self.rate_limiter = SiteRateLimiter.from_settings(settings)
        if registry is None:
            registry = AdapterRegistry(rate_limiter=self.rate_limiter)
            register_adapters(registry, settings)
        self.registry = registry
        self.orchestrator = ScrapeOrchestrator(
            self.registry,
            rate_limiter=self.rate_limiter,
            adapter_timeout=settings.ADAPTER_TIMEOUT_SECONDS,
            overall_timeout=settings.COLD_PATH_TIMEOUT_SECONDS,
        )

        self.pipeline = ValidationPipeline(default_currency=settings.DEFAULT_CURRENCY)
        self.writer = PersistenceWriter(self.db, self.cache, settings)
        self.metrics = ProductMetricsService(self.db, self.cache, settings)
        self.queue = JobQueue(self.db, settings)

        self.refresh_guard = RefreshGuard()
        self.coordinator = RefreshCoordinator(self.queue, self.refresh_guard, settings)
        self.refresh_service = RefreshService(
            self.db,
            self.cache,
            self.orchestrator,
            self.pipeline,
            self.writer,
            self.metrics,
            self.refresh_guard,
            settings,
        )
        self.search_service = SearchService(
            self.cache,
            self.orchestrator,
            self.pipeline,
            self.writer,
            self.metrics,
            self.coordinator,
            settings,
        )
        self.worker_pool = WorkerPool(self.queue, self.refresh_service, settings)
        self.scheduler = RefreshScheduler(self.queue, self.metrics, settings)

    async def init_db(self) -> None:
        await self.db.create_all()
        self.logger.info("database_initialized", dialect=self.db.dialect_name)

    async def health(self) -> dict:
        """Connectivity of the store and the cache."""
        return {
            "database": await self.db.health_check(),
            "cache": await self.cache.health_check(),
            "adapters": self.registry.sites(),
        }

    async def close(self) -> None:
        """Stop background work and release every client."""
        if self.worker_pool.is_running:
            await self.worker_pool.stop()
        if self.scheduler.is_running():
            self.scheduler.stop()
        await self.registry.close()
        await self.cache.close()
        await self.db.close()
        self.logger.info("application_closed")

    async def __aenter__(self) -> "Application":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

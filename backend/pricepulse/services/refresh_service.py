"""Background refresh: the active-refresh guard, job scheduling and job execution."""

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from pricepulse.config import Settings
from pricepulse.core.exceptions import FetchError, TransientNetworkError
from pricepulse.db.session import Database
from pricepulse.models.product import Product
from pricepulse.schemas.common import TIER_PRIORITY, JobType
from pricepulse.schemas.product import ValidatedProduct
from pricepulse.scrapers.orchestrator import ScrapeOrchestrator
from pricepulse.services.cache_service import CacheService, search_cache_key
from pricepulse.services.delta_merge import MergeOptions, merge_results
from pricepulse.services.job_queue import JobQueue
from pricepulse.services.metrics import ProductMetricsService
from pricepulse.services.persistence import PersistenceWriter
from pricepulse.services.validation import ValidationPipeline

logger = structlog.get_logger(__name__)


def query_dedupe_key(key: str) -> str:
    return f"{JobType.DELTA_REFRESH.value}:{key}"


class RefreshGuard:
    """Set of cache keys with a refresh in flight in this process.

    The guard is per-instance only. Several instances sharing one cache can
    still refresh the same key concurrently; the queue dedupe key narrows
    that window but is not a distributed lock.
    """

    def __init__(self):
        self._active: Set[str] = set()
        self._lock = asyncio.Lock()

    async def try_acquire(self, key: str) -> bool:
        async with self._lock:
            if key in self._active:
                return False
            self._active.add(key)
            return True

    async def release(self, key: str) -> None:
        async with self._lock:
            self._active.discard(key)

    def is_active(self, key: str) -> bool:
        return key in self._active

    def __len__(self) -> int:
        return len(self._active)


class RefreshCoordinator:
    """Turns a stale cache read into at most one queued refresh job."""

    def __init__(self, queue: JobQueue, guard: RefreshGuard, settings: Settings):
        self.queue = queue
        self.guard = guard
        self.settings = settings
        self.logger = logger.bind(service="refresh_coordinator")

    async def schedule_query_refresh(self, query: str) -> Optional[int]:
        """Enqueue a delta refresh for a query unless one is already active.

        Returns:
            The new job id, or None when a refresh was already in flight,
            already queued, or the queue could not be reached
        """
        key = search_cache_key(query)
        if not await self.guard.try_acquire(key):
            self.logger.debug("refresh_already_active", key=key)
            return None

        try:
            job_id = await self.queue.enqueue(
                JobType.DELTA_REFRESH,
                {"query": query.strip()},
                priority=TIER_PRIORITY[self.settings.SEARCH_CACHE_TIER],
                dedupe_key=query_dedupe_key(key),
            )
        except (SQLAlchemyError, OSError) as e:
            self.logger.warning("refresh_enqueue_failed", key=key, error=str(e))
            return None
        finally:
            await self.guard.release(key)

        if job_id is not None:
            self.logger.info("refresh_scheduled", key=key, job_id=job_id)
        return job_id


class RefreshService:
    """Executes queued scrape jobs.

    Every job runs scrape, validation, delta merge and persistence in that
    order. Adapter failures surface as FetchError subclasses so the worker
    can decide whether to retry.
    """

    def __init__(
        self,
        db: Database,
        cache: CacheService,
        orchestrator: ScrapeOrchestrator,
        pipeline: ValidationPipeline,
        writer: PersistenceWriter,
        metrics: ProductMetricsService,
        guard: RefreshGuard,
        settings: Settings,
    ):
        self.db = db
        self.cache = cache
        self.orchestrator = orchestrator
        self.pipeline = pipeline
        self.writer = writer
        self.metrics = metrics
        self.guard = guard
        self.settings = settings
        self.logger = logger.bind(service="refresh_service")

    @property
    def cache_ttl(self) -> int:
        return self.settings.CACHE_TTL_SECONDS

    async def execute(self, job_type: JobType, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Run one job and return a JSON-able summary.

        Raises:
            ValueError: Unknown job type or unusable payload
            FetchError: Every adapter failed
        """
        job_type = JobType(job_type)
        payload = payload or {}

        if job_type == JobType.FULL_SEARCH:
            query = payload.get("query")
            if not query:
                raise ValueError("full_search job needs a query")
            return await self.full_search(query)

        if payload.get("query"):
            return await self.refresh_query(payload["query"])
        if payload.get("product_ids"):
            return await self.refresh_products(payload["product_ids"])
        raise ValueError("delta_refresh job needs a query or product_ids")

    async def _scrape_and_validate(self, query: str, sites: Optional[Iterable[str]] = None) -> List[ValidatedProduct]:
        fan = await self.orchestrator.fan_out(query, sites=sites)
        fan.raise_if_all_failed()
        validation = self.pipeline.validate_records(fan.records, {"query": query})
        return validation.valid

    async def full_search(self, query: str) -> Dict[str, Any]:
        """Scrape a query from scratch and replace its cache entry."""
        key = search_cache_key(query)
        products = await self._scrape_and_validate(query)
        if not products:
            self.logger.info("full_search_empty", query=query)
            return {"query": query, "valid": 0, "persisted": 0, "failed": 0}

        comparison = merge_results([], [p.to_cache_item() for p in products])
        outcome = await self.writer.persist(products, cache_key=key, cache_items=comparison.merged, ttl=self.cache_ttl)
        await self.metrics.update_last_scraped_at(p.product_id for p in products)

        return {
            "query": query,
            "valid": len(products),
            "persisted": outcome.batch.success if outcome.batch else 0,
            "failed": outcome.batch.failed if outcome.batch else 0,
            "cache_written": outcome.cache_written,
        }

    async def refresh_query(self, query: str) -> Dict[str, Any]:
        """Delta-refresh one query's cache entry.

        The merged set replaces the entry only when the rebuild decision says
        so; otherwise the cached items are re-stamped as fresh.
        """
        key = search_cache_key(query)
        if not await self.guard.try_acquire(key):
            self.logger.info("refresh_skipped_active", key=key)
            return {"query": query, "skipped": True}

        try:
            products = await self._scrape_and_validate(query)
            fresh_items = [p.to_cache_item() for p in products]

            cached = await self.cache.get_envelope(key)
            cached_items = cached.data if cached is not None else []
            comparison = merge_results(cached_items, fresh_items, MergeOptions.from_settings(self.settings))

            items = comparison.merged if comparison.has_changes else cached_items
            outcome = await self.writer.persist(products)
            if items:
                outcome.cache_written = await self.writer.refresh_cache(key, items, ttl=self.cache_ttl)
            elif cached is not None:
                # Every cached item disappeared upstream
                await self.cache.delete(key)

            await self.metrics.update_last_scraped_at(p.product_id for p in products)
        finally:
            await self.guard.release(key)

        self.logger.info(
            "query_refreshed",
            key=key,
            has_changes=comparison.has_changes,
            reason=comparison.reason,
            new=len(comparison.new_items),
            updated=len(comparison.updated_items),
            removed=len(comparison.removed_items),
        )
        return {
            "query": query,
            "valid": len(products),
            "new": len(comparison.new_items),
            "updated": len(comparison.updated_items),
            "removed": len(comparison.removed_items),
            "has_changes": comparison.has_changes,
            "persisted": outcome.batch.success if outcome.batch else 0,
            "failed": outcome.batch.failed if outcome.batch else 0,
            "cache_written": outcome.cache_written,
        }

    async def _load_products(self, product_ids: List[str]) -> List[Product]:
        async with self.db.session() as session:
            result = await session.scalars(
                select(Product).where(Product.product_id.in_(product_ids), Product.is_valid.is_(True))
            )
            return list(result)

    async def refresh_products(self, product_ids: List[str]) -> Dict[str, Any]:
        """Re-scrape stored products through their own site's adapter.

        Each product is searched by its stored name and matched back by
        product_id. Products whose adapter fails are skipped; the job only
        fails when every lookup failed.
        """
        ids = [pid for pid in dict.fromkeys(product_ids) if pid]
        rows = await self._load_products(ids)

        refreshed: List[ValidatedProduct] = []
        changed = 0
        not_found = 0
        errors: Dict[str, FetchError] = {}

        for row in rows:
            try:
                candidates = await self._scrape_and_validate(row.name, sites=[row.site])
            except FetchError as e:
                errors[row.product_id] = e
                continue

            match = next((p for p in candidates if p.product_id == row.product_id), None)
            if match is None:
                not_found += 1
                continue

            stored = {
                "site": row.site,
                "url": row.url,
                "product_name": row.name,
                "price_amount": row.price,
                "image_url": row.image_url,
            }
            comparison = merge_results([stored], [match.to_cache_item()], MergeOptions.from_settings(self.settings))
            if comparison.has_changes:
                changed += 1
            refreshed.append(match)

        if rows and len(errors) == len(rows):
            first = next(iter(errors.values()))
            if all(not e.retryable for e in errors.values()):
                raise first
            raise TransientNetworkError(first.site, f"all {len(rows)} product lookups failed")

        outcome = await self.writer.persist(refreshed) if refreshed else None
        attempted = [row.product_id for row in rows if row.product_id not in errors]
        await self.metrics.update_last_scraped_at(attempted)

        self.logger.info(
            "products_refreshed",
            requested=len(ids),
            loaded=len(rows),
            refreshed=len(refreshed),
            changed=changed,
            not_found=not_found,
            errors=len(errors),
        )
        return {
            "requested": len(ids),
            "refreshed": len(refreshed),
            "changed": changed,
            "not_found": not_found,
            "errors": len(errors),
            "persisted": outcome.batch.success if outcome and outcome.batch else 0,
        }

"""Read path: serve from the freshness cache, fall back to a live fan-out."""

from typing import Any, Dict, Iterable, List

import structlog

from pricepulse.config import Settings
from pricepulse.core.timeutils import utcnow
from pricepulse.schemas.cache import SearchResponse
from pricepulse.schemas.common import CacheSource
from pricepulse.scrapers.orchestrator import ScrapeOrchestrator
from pricepulse.services.cache_service import CacheService, search_cache_key
from pricepulse.services.delta_merge import merge_results
from pricepulse.services.metrics import ProductMetricsService
from pricepulse.services.persistence import PersistenceWriter
from pricepulse.services.refresh_service import RefreshCoordinator
from pricepulse.services.validation import ValidationPipeline

logger = structlog.get_logger(__name__)


def _served_product_ids(items: Iterable[Dict[str, Any]]) -> List[str]:
    return [item["product_id"] for item in items if isinstance(item, dict) and item.get("product_id")]


class SearchService:
    """Stale-while-revalidate search over the cache and the scraper fan-out."""

    def __init__(
        self,
        cache: CacheService,
        orchestrator: ScrapeOrchestrator,
        pipeline: ValidationPipeline,
        writer: PersistenceWriter,
        metrics: ProductMetricsService,
        coordinator: RefreshCoordinator,
        settings: Settings,
    ):
        self.cache = cache
        self.orchestrator = orchestrator
        self.pipeline = pipeline
        self.writer = writer
        self.metrics = metrics
        self.coordinator = coordinator
        self.settings = settings
        self.logger = logger.bind(service="search_service")

    async def search(self, query: str, force_fresh: bool = False) -> SearchResponse:
        """Answer a query.

        A cache hit is served as-is, stale or not; a stale hit also queues
        one background refresh. A miss (or force_fresh) scrapes inline.

        Args:
            query: Free-text search query
            force_fresh: Skip the cache read

        Returns:
            SearchResponse

        Raises:
            ValueError: If the query is blank
        """
        key = search_cache_key(query)
        query = query.strip()

        if not force_fresh:
            policy = self.settings.tier_policy(self.settings.SEARCH_CACHE_TIER)
            envelope = await self.cache.get_with_metadata(key, policy.freshness_minutes)
            if envelope is not None:
                refresh_scheduled = False
                if envelope.is_stale:
                    refresh_scheduled = await self.coordinator.schedule_query_refresh(query) is not None
                await self.metrics.increment_search_counts(_served_product_ids(envelope.data))

                self.logger.info(
                    "search_served_from_cache",
                    key=key,
                    is_stale=envelope.is_stale,
                    results=len(envelope.data),
                    refresh_scheduled=refresh_scheduled,
                )
                return SearchResponse(
                    query=query,
                    source=envelope.source,
                    fetched_at=envelope.fetched_at,
                    is_stale=envelope.is_stale,
                    results=envelope.data,
                    refresh_scheduled=refresh_scheduled,
                )

        return await self._cold_path(query, key)

    async def _cold_path(self, query: str, key: str) -> SearchResponse:
        fan = await self.orchestrator.fan_out(query)
        validation = self.pipeline.validate_records(fan.records, {"query": query})
        products = validation.valid
        fetched_at = utcnow()

        if not products:
            self.logger.info(
                "search_no_results",
                key=key,
                adapters_failed=len(fan.errors),
                invalid=len(validation.invalid),
            )
            return SearchResponse(
                query=query,
                source=CacheSource.FRESH,
                fetched_at=fetched_at,
                results=[],
                degraded=fan.all_failed,
            )

        comparison = merge_results([], [p.to_cache_item() for p in products])
        outcome = await self.writer.persist(
            products,
            cache_key=key,
            cache_items=comparison.merged,
            ttl=self.settings.CACHE_TTL_SECONDS,
        )
        await self.metrics.increment_search_counts(p.product_id for p in products)

        self.logger.info(
            "search_served_fresh",
            key=key,
            results=len(comparison.merged),
            invalid=len(validation.invalid),
            store_unavailable=outcome.store_unavailable,
            cache_written=outcome.cache_written,
        )
        return SearchResponse(
            query=query,
            source=CacheSource.FRESH,
            fetched_at=fetched_at,
            is_stale=False,
            results=comparison.merged,
            degraded=outcome.store_unavailable,
        )

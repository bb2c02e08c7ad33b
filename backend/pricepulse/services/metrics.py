"""Product demand metrics and HOT/WARM/COLD tiering.

Searches bump ephemeral Redis counters; an hourly flush drains them into
``product_metrics.search_count_week`` and tiers are then recomputed over
the whole table.
"""

import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import structlog
from redis.exceptions import RedisError
from sqlalchemy import Integer, and_, cast, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from pricepulse.config import Settings
from pricepulse.core.timeutils import as_utc, utcnow
from pricepulse.db.session import Database
from pricepulse.models.product import Product
from pricepulse.models.product_metrics import ProductMetrics
from pricepulse.schemas.common import Tier
from pricepulse.services.cache_service import CacheService

logger = structlog.get_logger(__name__)

COUNTER_PREFIX = "metrics:search_count:"

# Rows per bulk statement
_CHUNK = 500


def counter_key(product_id: str) -> str:
    return f"{COUNTER_PREFIX}{product_id}"


def decayed_count(factor: float, dialect_name: str):
    """Weekly count scaled by ``factor`` and rounded down.

    Postgres rounds on an integer cast, so it floors explicitly; SQLite
    truncates, which is the same for non-negative counts.
    """
    scaled = ProductMetrics.search_count_week * factor
    if dialect_name == "postgresql":
        scaled = func.floor(scaled)
    return cast(scaled, Integer)


def _chunks(items: Sequence, size: int = _CHUNK) -> Iterable[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


@dataclass
class MetricsRow:
    """Ranking input for one product."""

    product_id: str
    search_count_week: int
    last_scraped_at: Optional[datetime]
    is_tracked: bool
    tier: Optional[Tier] = None


@dataclass
class ScrapeCandidate:
    """A product due for a background refresh."""

    product_id: str
    site: str
    site_product_id: str
    name: str
    url: str
    search_count_week: int
    last_scraped_at: Optional[datetime]


def _rank_key(row: MetricsRow) -> Tuple:
    # Demand desc, most recently scraped first, never-scraped last
    scraped = as_utc(row.last_scraped_at)
    return (
        -row.search_count_week,
        0 if scraped else 1,
        -scraped.timestamp() if scraped else 0.0,
        row.product_id,
    )


def _cutoff(total: int, share: float) -> int:
    return math.floor(round(total * share, 6))


def assign_tiers(rows: Sequence[MetricsRow], hot_share: float, warm_share: float) -> Dict[str, Tier]:
    """Total, idempotent tier assignment.

    The top ``hot_share`` of untracked products by demand is HOT (at least
    one when any exist), every tracked product is HOT on top of that, the
    next band up to the cumulative ``warm_share`` is WARM, and the rest
    are COLD.

    Args:
        rows: Every product in the metrics table
        hot_share: Cumulative HOT cutoff, e.g. 0.01
        warm_share: Cumulative WARM cutoff, e.g. 0.20

    Returns:
        product_id -> Tier for every row
    """
    total = len(rows)
    assignment: Dict[str, Tier] = {}
    if total == 0:
        return assignment

    hot_n = max(1, _cutoff(total, hot_share))
    warm_n = max(0, _cutoff(total, warm_share) - hot_n)

    for row in rows:
        if row.is_tracked:
            assignment[row.product_id] = Tier.HOT

    ranked = sorted((row for row in rows if not row.is_tracked), key=_rank_key)
    for index, row in enumerate(ranked):
        if index < hot_n:
            assignment[row.product_id] = Tier.HOT
        elif index < hot_n + warm_n:
            assignment[row.product_id] = Tier.WARM
        else:
            assignment[row.product_id] = Tier.COLD
    return assignment


class ProductMetricsService:
    """Demand counting, tier maintenance and refresh candidate selection."""

    def __init__(self, db: Database, cache: CacheService, settings: Settings):
        self.db = db
        self.cache = cache
        self.settings = settings
        self.logger = logger.bind(service="product_metrics")

    def _insert(self):
        return pg_insert if self.db.dialect_name == "postgresql" else sqlite_insert

    # ------------------------------------------------------------------
    # Ephemeral counters
    # ------------------------------------------------------------------

    async def increment_search_count(self, product_id: str) -> None:
        """Bump the weekly counter for one product. Never raises."""
        if product_id:
            await self.increment_search_counts([product_id])

    async def increment_search_counts(self, product_ids: Iterable[str]) -> None:
        """Bump counters for many products in one pipelined round trip."""
        counts = Counter(pid for pid in product_ids if pid)
        if not counts:
            return
        ttl = self.settings.METRICS_COUNTER_TTL_SECONDS
        try:
            redis = await self.cache.get_client()
            async with redis.pipeline(transaction=False) as pipe:
                for product_id, n in counts.items():
                    key = counter_key(product_id)
                    pipe.incrby(key, n)
                    pipe.expire(key, ttl)
                await pipe.execute()
        except RedisError as e:
            self.logger.warning("search_count_increment_failed", products=len(counts), error=str(e))

    async def _drain_counters(self) -> Dict[str, int]:
        redis = await self.cache.get_client()
        keys = [key async for key in redis.scan_iter(match=f"{COUNTER_PREFIX}*", count=500)]
        if not keys:
            return {}

        async with redis.pipeline(transaction=True) as pipe:
            for key in keys:
                pipe.get(key)
                pipe.delete(key)
            replies = await pipe.execute()

        counts: Dict[str, int] = {}
        for key, value in zip(keys, replies[0::2]):
            try:
                count = int(value) if value is not None else 0
            except (TypeError, ValueError):
                continue
            if count > 0:
                counts[key[len(COUNTER_PREFIX):]] = count
        return counts

    async def _restore_counters(self, counts: Dict[str, int]) -> None:
        ttl = self.settings.METRICS_COUNTER_TTL_SECONDS
        try:
            redis = await self.cache.get_client()
            async with redis.pipeline(transaction=False) as pipe:
                for product_id, count in counts.items():
                    pipe.incrby(counter_key(product_id), count)
                    pipe.expire(counter_key(product_id), ttl)
                await pipe.execute()
        except RedisError as e:
            self.logger.error("search_count_restore_failed", products=len(counts), error=str(e))

    async def flush_metrics_to_database(self) -> int:
        """Drain Redis counters into search_count_week.

        Counters are read and deleted atomically; the upsert runs in one
        transaction. If the database write fails the drained counts are
        put back so the next flush retries them.

        Returns:
            Number of products flushed

        Raises:
            SQLAlchemyError: If the database write failed
        """
        try:
            counts = await self._drain_counters()
        except RedisError as e:
            self.logger.error("metrics_drain_failed", error=str(e))
            return 0

        if not counts:
            self.logger.debug("no_metrics_to_flush")
            return 0

        rows = [
            {
                "product_id": product_id,
                "search_count_week": count,
                "tier": Tier.COLD,
                "is_tracked": False,
            }
            for product_id, count in counts.items()
        ]
        insert = self._insert()

        try:
            async with self.db.session() as session:
                async with session.begin():
                    for chunk in _chunks(rows):
                        stmt = insert(ProductMetrics).values(list(chunk))
                        stmt = stmt.on_conflict_do_update(
                            index_elements=["product_id"],
                            set_={
                                "search_count_week": ProductMetrics.search_count_week
                                + stmt.excluded.search_count_week,
                                "updated_at": func.now(),
                            },
                        )
                        await session.execute(stmt)
        except SQLAlchemyError as e:
            self.logger.error("metrics_flush_failed", products=len(counts), error=str(e))
            await self._restore_counters(counts)
            raise

        self.logger.info("metrics_flushed", flushed=len(counts), searches=sum(counts.values()))
        return len(counts)

    # ------------------------------------------------------------------
    # Durable metrics
    # ------------------------------------------------------------------

    async def update_last_scraped_at(self, product_ids: Iterable[str], scraped_at: Optional[datetime] = None) -> int:
        """Mark products as refreshed, creating metrics rows lazily.

        Returns:
            Number of products touched
        """
        ids = [pid for pid in dict.fromkeys(product_ids) if pid]
        if not ids:
            return 0
        scraped_at = scraped_at or utcnow()
        insert = self._insert()

        async with self.db.session() as session:
            async with session.begin():
                for chunk in _chunks(ids):
                    stmt = insert(ProductMetrics).values(
                        [
                            {
                                "product_id": pid,
                                "search_count_week": 0,
                                "last_scraped_at": scraped_at,
                                "tier": Tier.COLD,
                                "is_tracked": False,
                            }
                            for pid in chunk
                        ]
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["product_id"],
                        set_={"last_scraped_at": stmt.excluded.last_scraped_at, "updated_at": func.now()},
                    )
                    await session.execute(stmt)

        self.logger.debug("last_scraped_updated", products=len(ids))
        return len(ids)

    async def _load_rows(self, session) -> List[MetricsRow]:
        result = await session.execute(
            select(
                ProductMetrics.product_id,
                ProductMetrics.search_count_week,
                ProductMetrics.last_scraped_at,
                ProductMetrics.is_tracked,
                ProductMetrics.tier,
            )
        )
        return [
            MetricsRow(
                product_id=r.product_id,
                search_count_week=r.search_count_week or 0,
                last_scraped_at=r.last_scraped_at,
                is_tracked=bool(r.is_tracked),
                tier=r.tier,
            )
            for r in result
        ]

    async def update_tiers(self) -> Dict[Tier, int]:
        """Recompute every product's tier in one transaction.

        Only rows whose tier actually changes are written.

        Returns:
            Product count per tier after the run
        """
        async with self.db.session() as session:
            async with session.begin():
                rows = await self._load_rows(session)
                assignment = assign_tiers(
                    rows,
                    self.settings.TIER_HOT_PERCENTILE,
                    self.settings.TIER_WARM_PERCENTILE,
                )

                changes: Dict[Tier, List[str]] = {tier: [] for tier in Tier}
                for row in rows:
                    new_tier = assignment[row.product_id]
                    if row.tier != new_tier:
                        changes[new_tier].append(row.product_id)

                for tier, ids in changes.items():
                    for chunk in _chunks(ids):
                        await session.execute(
                            update(ProductMetrics)
                            .where(ProductMetrics.product_id.in_(list(chunk)))
                            .values(tier=tier, updated_at=func.now())
                        )

        counts = {tier: 0 for tier in Tier}
        for tier in assignment.values():
            counts[tier] += 1

        self.logger.info(
            "tiers_updated",
            total=len(assignment),
            changed=sum(len(ids) for ids in changes.values()),
            hot=counts[Tier.HOT],
            warm=counts[Tier.WARM],
            cold=counts[Tier.COLD],
        )
        return counts

    async def get_products_for_scraping(
        self,
        tier: Tier,
        interval_hours: int,
        limit: int = 100,
    ) -> List[ScrapeCandidate]:
        """Valid products in a tier whose last scrape is due.

        Args:
            tier: Tier to select from
            interval_hours: Minimum hours since the last scrape
            limit: Max products to return

        Returns:
            Candidates ordered by demand desc, then oldest scrape first
        """
        cutoff = utcnow() - timedelta(hours=interval_hours)
        stmt = (
            select(
                ProductMetrics.product_id,
                ProductMetrics.search_count_week,
                ProductMetrics.last_scraped_at,
                Product.site,
                Product.site_product_id,
                Product.name,
                func.coalesce(Product.affiliate_url, Product.url).label("url"),
            )
            .join(Product, Product.product_id == ProductMetrics.product_id)
            .where(
                and_(
                    ProductMetrics.tier == tier,
                    Product.is_valid.is_(True),
                    or_(
                        ProductMetrics.last_scraped_at.is_(None),
                        ProductMetrics.last_scraped_at <= cutoff,
                    ),
                )
            )
            .order_by(
                ProductMetrics.search_count_week.desc(),
                ProductMetrics.last_scraped_at.asc().nulls_first(),
                ProductMetrics.product_id,
            )
            .limit(limit)
        )

        async with self.db.session() as session:
            result = await session.execute(stmt)
            candidates = [
                ScrapeCandidate(
                    product_id=r.product_id,
                    site=r.site,
                    site_product_id=r.site_product_id,
                    name=r.name,
                    url=r.url,
                    search_count_week=r.search_count_week,
                    last_scraped_at=as_utc(r.last_scraped_at),
                )
                for r in result
            ]

        self.logger.debug("scrape_candidates_selected", tier=tier.value, count=len(candidates))
        return candidates

    async def set_tracked(self, product_id: str, is_tracked: bool = True) -> None:
        """Pin (or unpin) a product. Pinning forces HOT immediately.

        Unpinning leaves the tier alone until the next update_tiers run.
        """
        insert = self._insert()
        stmt = insert(ProductMetrics).values(
            product_id=product_id,
            search_count_week=0,
            is_tracked=is_tracked,
            tier=Tier.HOT if is_tracked else Tier.COLD,
        )
        set_ = {"is_tracked": stmt.excluded.is_tracked, "updated_at": func.now()}
        if is_tracked:
            set_["tier"] = Tier.HOT
        stmt = stmt.on_conflict_do_update(index_elements=["product_id"], set_=set_)

        async with self.db.session() as session:
            async with session.begin():
                await session.execute(stmt)

        self.logger.info("product_tracking_changed", product_id=product_id, is_tracked=is_tracked)

    async def decay_search_counts(self, factor: Optional[float] = None) -> int:
        """Scale every weekly counter down so demand decays over time.

        Returns:
            Number of rows decayed
        """
        factor = self.settings.SEARCH_COUNT_DECAY_FACTOR if factor is None else factor
        async with self.db.session() as session:
            async with session.begin():
                result = await session.execute(
                    update(ProductMetrics)
                    .where(ProductMetrics.search_count_week > 0)
                    .values(
                        search_count_week=decayed_count(factor, self.db.dialect_name),
                        updated_at=func.now(),
                    )
                )
        self.logger.info("search_counts_decayed", rows=result.rowcount, factor=factor)
        return result.rowcount

    async def get_metrics(self, product_id: str) -> Optional[ProductMetrics]:
        async with self.db.session() as session:
            return await session.get(ProductMetrics, product_id)

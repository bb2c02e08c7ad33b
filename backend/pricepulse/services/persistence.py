"""Atomic persistence of validated products.

Each product is upserted in its own transaction together with its price
history row. The cache envelope is written afterwards as a separate atomic
operation; a failed cache write is logged and never undoes a commit.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence
from uuid import UUID

import structlog
from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from pricepulse.config import Settings
from pricepulse.core.exceptions import CacheWriteError, StoreUnavailableError
from pricepulse.db.session import Database
from pricepulse.models.price_history import PriceHistory
from pricepulse.models.product import Product
from pricepulse.schemas.common import CacheSource
from pricepulse.schemas.product import ValidatedProduct
from pricepulse.services.cache_service import CacheItem, CacheService

logger = structlog.get_logger(__name__)

# Columns never overwritten on conflict
_IMMUTABLE_COLUMNS = {"id", "site", "site_product_id", "created_at"}


@dataclass
class UpsertResult:
    product_id: str
    db_id: UUID


@dataclass
class RecordOutcome:
    """Per-record result inside a batch upsert."""

    product_id: str
    ok: bool
    db_id: Optional[UUID] = None
    error: Optional[str] = None


@dataclass
class BatchUpsertResult:
    success: int = 0
    failed: int = 0
    results: List[RecordOutcome] = field(default_factory=list)


@dataclass
class PersistOutcome:
    """What happened to one ingestion's DB and cache writes."""

    batch: Optional[BatchUpsertResult] = None
    store_unavailable: bool = False
    cache_written: bool = False


def product_row_values(product: ValidatedProduct) -> Dict[str, Any]:
    """Map a validated product onto ``products`` columns."""
    return {
        "site": product.site,
        "site_product_id": product.site_product_id,
        "product_id": product.product_id,
        "name": product.product_name,
        "price": product.price_amount,
        "currency": product.price_currency,
        "url": product.url,
        "image_url": product.image_url,
        "affiliate_url": product.affiliate_url,
        "seller_rating": product.seller_rating,
        "seller_rating_count": product.seller_rating_count,
        "seller_type": product.seller_type,
        "seller_location": product.seller_location,
        "source_sku": product.source_sku,
        "shipping_info": product.shipping_info,
        "shipping_estimate_days": product.shipping_estimate_days,
        "is_fulfilled_by_retailer": product.is_fulfilled_by_retailer,
        "vat_included": product.vat_included,
        "is_valid": product.is_valid,
        "trust_score": product.trust_score,
        "last_checked_at": product.last_checked_at,
    }


class PersistenceWriter:
    """Writes validated products to the relational store and the cache."""

    def __init__(self, db: Database, cache: CacheService, settings: Settings):
        """Initialize writer.

        Args:
            db: Database lifecycle object
            cache: Freshness cache
            settings: Application settings (batch size, TTLs)
        """
        self.db = db
        self.cache = cache
        self.settings = settings
        self.logger = logger.bind(service="persistence")

    def _insert(self) -> Callable:
        return pg_insert if self.db.dialect_name == "postgresql" else sqlite_insert

    async def upsert_one(self, product: ValidatedProduct, source: str = "scraper") -> UpsertResult:
        """Insert or update one product and record its price.

        Runs in a single transaction: the product row is upserted on the
        (site, site_product_id) constraint and, when the price is positive,
        a price_history row is appended. Any failure rolls both back.

        Args:
            product: Validated product
            source: Label stored on the price history row

        Returns:
            UpsertResult with the stable product_id and the row id

        Raises:
            SQLAlchemyError: If the transaction failed (already rolled back)
        """
        values = product_row_values(product)
        insert = self._insert()
        stmt = insert(Product).values(id=uuid.uuid4(), **values)
        update_columns = {
            name: stmt.excluded[name] for name in values if name not in _IMMUTABLE_COLUMNS
        }
        update_columns["updated_at"] = func.now()
        stmt = stmt.on_conflict_do_update(
            index_elements=["site", "site_product_id"],
            set_=update_columns,
        ).returning(Product.id)

        try:
            async with self.db.session() as session:
                async with session.begin():
                    db_id = (await session.execute(stmt)).scalar_one()

                    if product.price_amount is not None and product.price_amount > 0:
                        session.add(
                            PriceHistory(
                                product_id=product.product_id,
                                name=product.product_name,
                                site=product.site,
                                url=product.url,
                                price=product.price_amount,
                                currency=product.price_currency,
                                source=source,
                            )
                        )
        except SQLAlchemyError as e:
            self.logger.error(
                "product_upsert_failed",
                product_id=product.product_id,
                site=product.site,
                error=str(e),
            )
            raise

        self.logger.debug("product_upserted", product_id=product.product_id, db_id=str(db_id))
        return UpsertResult(product_id=product.product_id, db_id=db_id)

    async def upsert_batch(
        self,
        products: Sequence[ValidatedProduct],
        source: str = "scraper",
    ) -> BatchUpsertResult:
        """Upsert products in fixed-size concurrent sub-batches.

        One record's failure is counted and reported; it never aborts its
        siblings.

        Raises:
            StoreUnavailableError: If the store cannot be reached at all
        """
        result = BatchUpsertResult()
        if not products:
            return result

        await self.db.ping()

        size = max(1, self.settings.UPSERT_BATCH_SIZE)
        for start in range(0, len(products), size):
            chunk = products[start:start + size]
            outcomes = await asyncio.gather(
                *(self.upsert_one(product, source=source) for product in chunk),
                return_exceptions=True,
            )
            for product, outcome in zip(chunk, outcomes):
                if isinstance(outcome, UpsertResult):
                    result.success += 1
                    result.results.append(
                        RecordOutcome(product_id=outcome.product_id, ok=True, db_id=outcome.db_id)
                    )
                elif isinstance(outcome, Exception):
                    result.failed += 1
                    result.results.append(
                        RecordOutcome(product_id=product.product_id, ok=False, error=str(outcome))
                    )
                else:
                    raise outcome

        self.logger.info(
            "batch_upsert_complete",
            total=len(products),
            success=result.success,
            failed=result.failed,
        )
        return result

    async def refresh_cache(
        self,
        key: str,
        items: Sequence[CacheItem],
        ttl: Optional[int] = None,
    ) -> bool:
        """Write a fresh envelope; failures are logged, not raised.

        Returns:
            True if the envelope was written
        """
        try:
            await self.cache.write_envelope_atomic(
                key,
                items,
                ttl=ttl or self.settings.CACHE_TTL_SECONDS,
                source=CacheSource.FRESH,
            )
            return True
        except CacheWriteError as e:
            self.logger.warning("cache_refresh_skipped", key=key, error=e.message)
            return False

    async def persist(
        self,
        products: Sequence[ValidatedProduct],
        cache_key: Optional[str] = None,
        cache_items: Optional[Sequence[CacheItem]] = None,
        ttl: Optional[int] = None,
        source: str = "scraper",
    ) -> PersistOutcome:
        """Store products, then refresh the cache entry.

        With the store unreachable the DB stage is skipped and the cache is
        still written, so serving continues in cache-only mode.

        Args:
            products: Validated products to upsert
            cache_key: Envelope key to refresh, if any
            cache_items: Items for the envelope (defaults to products)
            ttl: Envelope TTL in seconds
            source: Price history source label

        Returns:
            PersistOutcome
        """
        outcome = PersistOutcome()
        try:
            outcome.batch = await self.upsert_batch(products, source=source)
        except StoreUnavailableError as e:
            outcome.store_unavailable = True
            self.logger.warning("persistence_degraded", error=e.message, products=len(products))

        if cache_key is not None:
            items = cache_items if cache_items is not None else products
            outcome.cache_written = await self.refresh_cache(cache_key, items, ttl=ttl)

        return outcome

"""Tests for the atomic persistence writer."""

import json
import uuid
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from pricepulse.core.exceptions import StoreUnavailableError
from pricepulse.models import PriceHistory, Product
from pricepulse.services import persistence
from pricepulse.services.persistence import PersistenceWriter
from pricepulse.services.validation import ValidationPipeline

from conftest import raw_record


@pytest.fixture
def products(pipeline: ValidationPipeline):
    records = [raw_record("noon", f"Headphones model {i}", 100 + i, f"headphones-{i:03d}") for i in range(10)]
    return pipeline.validate_records(records).valid


async def _count(database, model) -> int:
    async with database.session() as session:
        return await session.scalar(select(func.count()).select_from(model))


class TestPersistenceWriter:
    """Tests for PersistenceWriter upserts and cache refresh."""

    async def test_upsert_creates_product_and_price_history(self, writer: PersistenceWriter, database, products):
        result = await writer.upsert_one(products[0])

        assert result.product_id == products[0].product_id
        async with database.session() as session:
            row = await session.scalar(select(Product).where(Product.product_id == products[0].product_id))
        assert row.name == "Headphones model 0"
        assert row.price == Decimal("100.00")
        assert row.site_product_id == "headphones-000"
        assert await _count(database, PriceHistory) == 1

    async def test_upsert_updates_existing_row(self, writer: PersistenceWriter, database, products):
        first = await writer.upsert_one(products[0])
        cheaper = products[0].model_copy(update={"price_amount": Decimal("79.00")})
        second = await writer.upsert_one(cheaper)

        assert second.db_id == first.db_id
        assert await _count(database, Product) == 1
        assert await _count(database, PriceHistory) == 2
        async with database.session() as session:
            row = await session.get(Product, first.db_id)
        assert row.price == Decimal("79.00")

    async def test_batch_isolates_failed_record(self, writer: PersistenceWriter, database, products):
        batch = list(products)
        # Violates NOT NULL on products.name
        batch[3] = batch[3].model_copy(update={"product_name": None})

        result = await writer.upsert_batch(batch)

        assert result.success == 9
        assert result.failed == 1
        assert len(result.results) == 10
        failed = [r for r in result.results if not r.ok]
        assert [r.product_id for r in failed] == [batch[3].product_id]
        assert await _count(database, Product) == 9
        # The failed record's price history rolled back with it
        assert await _count(database, PriceHistory) == 9

    async def test_batch_isolates_duplicate_key(
        self, writer: PersistenceWriter, database, pipeline, products, monkeypatch
    ):
        existing = await writer.upsert_one(pipeline.validate_record(raw_record("amazon", "Speaker", 50, "speaker-1")))
        # The fourth insert reuses an existing primary key
        ids = iter([uuid.uuid4() for _ in range(3)] + [existing.db_id] + [uuid.uuid4() for _ in range(6)])
        monkeypatch.setattr(persistence, "uuid", SimpleNamespace(uuid4=lambda: next(ids)))

        result = await writer.upsert_batch(products)

        assert (result.success, result.failed) == (9, 1)
        assert [r.product_id for r in result.results if not r.ok] == [products[3].product_id]
        assert await _count(database, Product) == 10
        assert await _count(database, PriceHistory) == 10
        async with database.session() as session:
            row = await session.get(Product, existing.db_id)
        assert row.name == "Speaker"

    async def test_batch_upsert_is_idempotent(self, writer: PersistenceWriter, database, products):
        await writer.upsert_batch(products)
        await writer.upsert_batch(products)
        assert await _count(database, Product) == 10

    async def test_persist_writes_cache_after_commit(self, writer: PersistenceWriter, fake_redis, products):
        outcome = await writer.persist(products, cache_key="search:headphones", ttl=600)

        assert outcome.batch.success == 10
        assert outcome.cache_written is True
        envelope = json.loads(fake_redis.store["search:headphones"])
        assert envelope["source"] == "fresh"
        assert len(envelope["data"]) == 10

    async def test_cache_failure_never_undoes_commit(self, writer: PersistenceWriter, database, fake_redis, products):
        fake_redis.fail = True

        outcome = await writer.persist(products[:3], cache_key="search:headphones")

        assert outcome.batch.success == 3
        assert outcome.cache_written is False
        assert await _count(database, Product) == 3

    async def test_store_unavailable_degrades_to_cache_only(self, cache, settings, fake_redis, products):
        database = AsyncMock()
        database.ping.side_effect = StoreUnavailableError("connection refused")
        writer = PersistenceWriter(database, cache, settings)

        outcome = await writer.persist(products, cache_key="search:headphones")

        assert outcome.store_unavailable is True
        assert outcome.batch is None
        assert outcome.cache_written is True
        assert "search:headphones" in fake_redis.store

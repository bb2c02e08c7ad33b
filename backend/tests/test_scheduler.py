"""Tests for the refresh scheduler cadences."""

from unittest.mock import AsyncMock

import pytest

from pricepulse.scheduler import RefreshScheduler, batch_dedupe_key
from pricepulse.schemas.common import JobType, Tier

from conftest import raw_record


@pytest.fixture
def scheduler(queue, metrics, settings) -> RefreshScheduler:
    return RefreshScheduler(queue, metrics, settings)


async def _seed_products(writer, metrics, pipeline, demand):
    products = pipeline.validate_records(
        [raw_record("noon", f"Air fryer {i}", 200 + i, f"air-fryer-{i}") for i in range(len(demand))]
    ).valid
    await writer.upsert_batch(products)
    for product, count in zip(products, demand):
        await metrics.increment_search_counts([product.product_id] * count)
    await metrics.flush_metrics_to_database()
    return products


def test_batch_dedupe_key_ignores_order():
    assert batch_dedupe_key(Tier.WARM, ["b", "a"]) == batch_dedupe_key(Tier.WARM, ["a", "b"])
    assert batch_dedupe_key(Tier.WARM, ["a"]) != batch_dedupe_key(Tier.COLD, ["a"])
    assert batch_dedupe_key(Tier.HOT, ["a"]).startswith("delta_refresh:HOT:")


class TestRefreshScheduler:
    """Tests for RefreshScheduler registration and enqueueing."""

    async def test_tier_refresh_batches_due_products(self, scheduler, queue, writer, metrics, pipeline):
        products = await _seed_products(writer, metrics, pipeline, demand=[3, 2, 1])

        assert await scheduler.enqueue_tier_refresh(Tier.COLD) == 2

        first = await queue.claim_next("w1")
        second = await queue.claim_next("w1")
        assert first.job_type == JobType.DELTA_REFRESH.value
        assert first.priority == 1
        assert first.payload == {
            "product_ids": [products[0].product_id, products[1].product_id],
            "tier": "COLD",
        }
        assert second.payload["product_ids"] == [products[2].product_id]
        assert first.dedupe_key == batch_dedupe_key(Tier.COLD, first.payload["product_ids"])

    async def test_tier_refresh_skips_batches_already_queued(self, scheduler, queue, writer, metrics, pipeline):
        await _seed_products(writer, metrics, pipeline, demand=[3, 2, 1])

        assert await scheduler.enqueue_tier_refresh(Tier.COLD) == 2
        assert await scheduler.enqueue_tier_refresh(Tier.COLD) == 0
        assert (await queue.get_queue_status())["pending"] == 2

    async def test_tier_refresh_with_nothing_due(self, scheduler, writer, metrics, pipeline):
        products = await _seed_products(writer, metrics, pipeline, demand=[1])
        await metrics.update_last_scraped_at([products[0].product_id])

        assert await scheduler.enqueue_tier_refresh(Tier.COLD) == 0
        assert await scheduler.enqueue_tier_refresh(Tier.HOT) == 0

    async def test_popular_queries_enqueue_full_searches(self, scheduler, queue, settings):
        settings.POPULAR_QUERIES = "iphone 15, air fryer,"

        assert await scheduler.enqueue_popular_queries() == 2
        assert await scheduler.enqueue_popular_queries() == 0

        job = await queue.claim_next("w1")
        assert job.job_type == JobType.FULL_SEARCH.value
        assert job.priority == 10
        assert job.payload == {"query": "iphone 15"}
        assert job.dedupe_key == "full_search:search:iphone 15"

    async def test_metrics_cycle_flushes_then_retiers(self, scheduler, metrics):
        await metrics.increment_search_counts(["a", "a", "b"])

        counts = await scheduler.run_metrics_cycle()

        assert sum(counts.values()) == 2
        assert (await metrics.get_metrics("a")).tier == Tier.HOT

    async def test_register_jobs_adds_five_cadences(self, scheduler):
        scheduler.start()
        try:
            status = scheduler.get_jobs_status()
            assert set(status) == {
                "metrics_flush",
                "refresh_hot",
                "refresh_warm",
                "refresh_cold",
                "search_count_decay",
            }
            assert all(job["next_run"] for job in status.values())
            assert scheduler.is_running()

            # A second start is a no-op
            scheduler.start()
            assert len(scheduler.get_jobs_status()) == 5
        finally:
            scheduler.stop()

    async def test_failing_tick_is_contained(self, scheduler):
        failing = AsyncMock(side_effect=RuntimeError("queue unreachable"))

        await scheduler._run_wrapper("refresh_hot", failing)

        failing.assert_awaited_once()

"""Tests for the durable job queue."""

import asyncio
from datetime import timedelta

from sqlalchemy import update

from pricepulse.core.timeutils import as_utc, utcnow
from pricepulse.models import ScrapeJob
from pricepulse.schemas.common import JobStatus, JobType
from pricepulse.services.job_queue import STALE_JOB_ERROR, JobQueue


async def _age_claim(database, job_id, minutes):
    async with database.session() as session:
        async with session.begin():
            await session.execute(
                update(ScrapeJob)
                .where(ScrapeJob.id == job_id)
                .values(claimed_at=utcnow() - timedelta(minutes=minutes))
            )


class TestJobQueue:
    """Tests for JobQueue ordering, retries and recovery."""

    async def test_priority_then_fifo(self, queue: JobQueue):
        cold = await queue.enqueue(JobType.DELTA_REFRESH, {"product_ids": ["a"]}, priority=1)
        hot_first = await queue.enqueue(JobType.DELTA_REFRESH, {"product_ids": ["b"]}, priority=10)
        warm = await queue.enqueue(JobType.DELTA_REFRESH, {"product_ids": ["c"]}, priority=5)
        hot_second = await queue.enqueue(JobType.FULL_SEARCH, {"query": "tv"}, priority=10)

        order = []
        while (job := await queue.claim_next("w1")) is not None:
            order.append(job.id)

        assert order == [hot_first, hot_second, warm, cold]

    async def test_claim_marks_running(self, queue: JobQueue):
        job_id = await queue.enqueue(JobType.FULL_SEARCH, {"query": "tv"})

        job = await queue.claim_next("worker-1")

        assert job.id == job_id
        assert job.status == JobStatus.RUNNING.value
        assert job.attempt == 1
        assert job.worker_id == "worker-1"
        assert job.payload == {"query": "tv"}

    async def test_concurrent_claims_never_share_a_job(self, queue: JobQueue):
        for i in range(6):
            await queue.enqueue(JobType.FULL_SEARCH, {"query": f"q{i}"})

        claimed = await asyncio.gather(*(queue.claim_next(f"w{i}") for i in range(8)))
        ids = [job.id for job in claimed if job is not None]

        assert len(ids) == 6
        assert len(set(ids)) == 6

    async def test_dedupe_key_blocks_active_duplicates(self, queue: JobQueue):
        first = await queue.enqueue(JobType.DELTA_REFRESH, {"query": "tv"}, dedupe_key="k")
        assert await queue.enqueue(JobType.DELTA_REFRESH, {"query": "tv"}, dedupe_key="k") is None
        assert await queue.has_active_job("k") is True

        await queue.claim_next("w1")
        assert await queue.enqueue(JobType.DELTA_REFRESH, {"query": "tv"}, dedupe_key="k") is None

        await queue.complete(first, {"valid": 3})
        assert await queue.has_active_job("k") is False
        assert await queue.enqueue(JobType.DELTA_REFRESH, {"query": "tv"}, dedupe_key="k") is not None

    async def test_complete_stores_result(self, queue: JobQueue):
        job_id = await queue.enqueue(JobType.FULL_SEARCH, {"query": "tv"})
        await queue.claim_next("w1")

        await queue.complete(job_id, {"valid": 12})

        job = await queue.get_job(job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.result == {"valid": 12}
        assert job.completed_at is not None

    async def test_retryable_failure_backs_off(self, queue: JobQueue, settings):
        job_id = await queue.enqueue(JobType.FULL_SEARCH, {"query": "tv"})
        await queue.claim_next("w1")
        before = utcnow()

        status = await queue.fail(job_id, "timeout", retryable=True)

        assert status == JobStatus.PENDING
        job = await queue.get_job(job_id)
        assert job.status == JobStatus.PENDING.value
        assert job.worker_id is None
        delay = (as_utc(job.available_at) - before).total_seconds()
        assert settings.RETRY_BACKOFF_BASE_SECONDS - 1 <= delay <= settings.RETRY_BACKOFF_BASE_SECONDS + 1
        # Not claimable until the backoff elapses
        assert await queue.claim_next("w1") is None

    async def test_retries_stop_at_max_attempts(self, queue: JobQueue):
        job_id = await queue.enqueue(JobType.FULL_SEARCH, {"query": "tv"}, max_attempts=2)

        await queue.claim_next("w1")
        assert await queue.fail(job_id, "timeout", retryable=True) == JobStatus.PENDING

        async with queue.db.session() as session:
            async with session.begin():
                await session.execute(
                    update(ScrapeJob).where(ScrapeJob.id == job_id).values(available_at=utcnow())
                )
        job = await queue.claim_next("w1")
        assert job.attempt == 2
        assert await queue.fail(job_id, "timeout", retryable=True) == JobStatus.FAILED

    async def test_non_retryable_failure_fails_immediately(self, queue: JobQueue):
        job_id = await queue.enqueue(JobType.FULL_SEARCH, {"query": "tv"})
        await queue.claim_next("w1")

        assert await queue.fail(job_id, "dns failure", retryable=False) == JobStatus.FAILED

        job = await queue.get_job(job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.error_message == "dns failure"

    async def test_stale_jobs_are_reclaimed(self, queue: JobQueue, database, settings):
        retry_id = await queue.enqueue(JobType.FULL_SEARCH, {"query": "a"})
        exhausted_id = await queue.enqueue(JobType.FULL_SEARCH, {"query": "b"}, max_attempts=1)
        await queue.claim_next("w1")
        await queue.claim_next("w1")
        for job_id in (retry_id, exhausted_id):
            await _age_claim(database, job_id, settings.STALE_JOB_TIMEOUT_MINUTES + 5)

        assert await queue.reclaim_stale_jobs() == 1

        assert (await queue.get_job(retry_id)).status == JobStatus.PENDING.value
        exhausted = await queue.get_job(exhausted_id)
        assert exhausted.status == JobStatus.FAILED.value
        assert exhausted.error_message == STALE_JOB_ERROR

    async def test_fresh_running_jobs_are_left_alone(self, queue: JobQueue):
        await queue.enqueue(JobType.FULL_SEARCH, {"query": "a"})
        await queue.claim_next("w1")
        assert await queue.reclaim_stale_jobs() == 0

    async def test_queue_status_counts(self, queue: JobQueue):
        first = await queue.enqueue(JobType.FULL_SEARCH, {"query": "a"})
        await queue.enqueue(JobType.FULL_SEARCH, {"query": "b"})
        await queue.enqueue(JobType.FULL_SEARCH, {"query": "c"})
        await queue.claim_next("w1")
        await queue.claim_next("w1")
        await queue.complete(first)

        assert await queue.get_queue_status() == {
            "pending": 1,
            "running": 1,
            "completed": 1,
            "failed": 0,
        }

"""Tests for the worker pool."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from pricepulse.core.exceptions import NonRetryableFetchError, SchemaValidationError, TransientNetworkError
from pricepulse.schemas.common import JobStatus, JobType
from pricepulse.services.job_queue import JobQueue
from pricepulse.services.worker_pool import WorkerPool, is_retryable


@pytest.fixture
def refresh_service():
    service = AsyncMock()
    service.execute.return_value = {"valid": 5}
    return service


@pytest.fixture
def pool(queue: JobQueue, refresh_service, settings) -> WorkerPool:
    return WorkerPool(queue, refresh_service, settings, poll_interval=0.01)


@pytest.mark.parametrize(
    "error,expected",
    [
        (TransientNetworkError("noon", "timed out"), True),
        (NonRetryableFetchError("noon", "dns failure"), False),
        (SchemaValidationError(["price"]), False),
        (ValueError("bad payload"), False),
        (RuntimeError("something unexpected"), True),
    ],
)
def test_retry_classification(error, expected):
    assert is_retryable(error) is expected


class TestWorkerPool:
    """Tests for WorkerPool job execution."""

    async def test_process_next_completes_job(self, pool: WorkerPool, queue: JobQueue, refresh_service):
        job_id = await queue.enqueue(JobType.FULL_SEARCH, {"query": "kettle"})

        assert await pool.process_next() == JobStatus.COMPLETED

        refresh_service.execute.assert_awaited_once_with("full_search", {"query": "kettle"})
        job = await queue.get_job(job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.result == {"valid": 5}

    async def test_process_next_on_empty_queue(self, pool: WorkerPool):
        assert await pool.process_next() is None

    async def test_transient_failure_is_retried(self, pool: WorkerPool, queue: JobQueue, refresh_service):
        refresh_service.execute.side_effect = TransientNetworkError("noon", "connection reset")
        job_id = await queue.enqueue(JobType.DELTA_REFRESH, {"query": "kettle"})

        assert await pool.process_next() == JobStatus.PENDING

        job = await queue.get_job(job_id)
        assert job.attempt == 1
        assert "connection reset" in job.error_message

    async def test_non_retryable_failure_fails_job(self, pool: WorkerPool, queue: JobQueue, refresh_service):
        refresh_service.execute.side_effect = NonRetryableFetchError("noon", "dns failure")
        job_id = await queue.enqueue(JobType.DELTA_REFRESH, {"query": "kettle"})

        assert await pool.process_next() == JobStatus.FAILED

        job = await queue.get_job(job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.attempt == 1

    async def test_unknown_error_is_retryable(self, pool: WorkerPool, queue: JobQueue, refresh_service):
        refresh_service.execute.side_effect = RuntimeError("boom")
        await queue.enqueue(JobType.DELTA_REFRESH, {"query": "kettle"})

        assert await pool.process_next() == JobStatus.PENDING

    async def test_pool_drains_queue_within_concurrency(self, queue: JobQueue, refresh_service, settings):
        in_flight = 0
        peak = 0

        async def slow_execute(job_type, payload):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.05)
            in_flight -= 1
            return {"query": payload["query"]}

        refresh_service.execute.side_effect = slow_execute
        for i in range(5):
            await queue.enqueue(JobType.FULL_SEARCH, {"query": f"q{i}"})

        pool = WorkerPool(queue, refresh_service, settings, concurrency=2, poll_interval=0.01)
        await pool.start()
        for _ in range(200):
            status = await queue.get_queue_status()
            if status["completed"] == 5:
                break
            await asyncio.sleep(0.02)
        await pool.stop()

        assert (await queue.get_queue_status())["completed"] == 5
        assert peak <= 2
        assert pool.is_running is False
        assert pool.active_jobs == 0

"""Worker pool that polls the job queue and executes scrape jobs."""

import asyncio
import uuid
from time import perf_counter
from typing import Dict, Optional

import structlog

from pricepulse.config import Settings
from pricepulse.core.exceptions import FetchError, RecordValidationError
from pricepulse.models.scrape_job import ScrapeJob
from pricepulse.schemas.common import JobStatus
from pricepulse.services.job_queue import JobQueue
from pricepulse.services.refresh_service import RefreshService

logger = structlog.get_logger(__name__)

# Failures that will not go away on retry
NON_RETRYABLE_ERRORS = (RecordValidationError, ValueError)


def is_retryable(error: BaseException) -> bool:
    """Retry decision for an exception escaping a job.

    FetchError carries its own classification; validation errors and bad
    payloads never retry; anything unrecognized does, up to the attempt cap.
    """
    if isinstance(error, FetchError):
        return error.retryable
    if isinstance(error, NON_RETRYABLE_ERRORS):
        return False
    return True


class WorkerPool:
    """Runs up to WORKER_CONCURRENCY jobs at a time from the durable queue.

    Adapter throttling lives in the per-site rate limiter, not here; the
    pool only caps how many jobs are in flight.
    """

    def __init__(
        self,
        queue: JobQueue,
        refresh_service: RefreshService,
        settings: Settings,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        stale_check_interval: float = 60.0,
    ):
        """Initialize the pool.

        Args:
            queue: Durable job queue
            refresh_service: Executes claimed jobs
            settings: Application settings
            concurrency: Max jobs in flight (defaults to WORKER_CONCURRENCY)
            poll_interval: Seconds between polls when idle
            stale_check_interval: Seconds between stale job checks
        """
        self.queue = queue
        self.refresh_service = refresh_service
        self.settings = settings
        self.concurrency = max(1, concurrency or settings.WORKER_CONCURRENCY)
        self.poll_interval = (
            settings.WORKER_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        )
        self.stale_check_interval = stale_check_interval
        self.worker_id = f"worker-{uuid.uuid4().hex[:8]}"
        self._running = False
        self._running_jobs: Dict[int, asyncio.Task] = {}
        self._loop_task: Optional[asyncio.Task] = None
        self._stale_task: Optional[asyncio.Task] = None
        self.logger = logger.bind(service="worker_pool", worker_id=self.worker_id)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_jobs(self) -> int:
        return len(self._running_jobs)

    async def start(self) -> None:
        """Start the poll loop and the stale job checker in the background."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop())
        self._stale_task = asyncio.create_task(self._stale_job_checker())
        self.logger.info("worker_pool_started", concurrency=self.concurrency)

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop polling and wait for in-flight jobs.

        Jobs still running after the timeout are cancelled; their rows stay
        'running' and are reclaimed by the stale job checker later.
        """
        self._running = False
        for task in (self._loop_task, self._stale_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._stale_task = None

        in_flight = list(self._running_jobs.values())
        if in_flight:
            done, pending = await asyncio.wait(in_flight, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                self.logger.warning("worker_jobs_abandoned", count=len(pending))
        self._cleanup_finished_tasks()
        self.logger.info("worker_pool_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                self._cleanup_finished_tasks()

                if len(self._running_jobs) < self.concurrency:
                    job = await self.queue.claim_next(self.worker_id)
                    if job is not None:
                        self._running_jobs[job.id] = asyncio.create_task(self._execute_job(job))
                        # Try to claim another job right away
                        continue

                await asyncio.sleep(self.poll_interval)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("worker_loop_error", error=str(e), exc_info=True)
                await asyncio.sleep(self.poll_interval)

    def _cleanup_finished_tasks(self) -> None:
        finished = [job_id for job_id, task in self._running_jobs.items() if task.done()]
        for job_id in finished:
            task = self._running_jobs.pop(job_id)
            if not task.cancelled() and task.exception() is not None:
                self.logger.error("job_task_crashed", job_id=job_id, error=str(task.exception()))

    async def _stale_job_checker(self) -> None:
        while self._running:
            try:
                await self.queue.reclaim_stale_jobs()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("stale_job_check_failed", error=str(e))
            await asyncio.sleep(self.stale_check_interval)

    async def process_next(self) -> Optional[JobStatus]:
        """Claim and run a single job inline.

        Returns:
            The job's resulting status, or None if nothing was available
        """
        job = await self.queue.claim_next(self.worker_id)
        if job is None:
            return None
        return await self._execute_job(job)

    async def _execute_job(self, job: ScrapeJob) -> JobStatus:
        log = self.logger.bind(job_id=job.id, job_type=job.job_type, attempt=job.attempt)
        log.info("job_started", priority=job.priority)
        start_time = perf_counter()

        try:
            result = await self.refresh_service.execute(job.job_type, job.payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            retryable = is_retryable(e)
            log.error(
                "job_failed",
                error=str(e),
                error_type=type(e).__name__,
                retryable=retryable,
                duration_seconds=round(perf_counter() - start_time, 3),
                exc_info=not isinstance(e, (FetchError, RecordValidationError)),
            )
            return await self.queue.fail(job.id, f"{type(e).__name__}: {e}", retryable=retryable)

        await self.queue.complete(job.id, result)
        log.info("job_completed", duration_seconds=round(perf_counter() - start_time, 3))
        return JobStatus.COMPLETED

"""Durable priority job queue backed by the ``scrape_jobs`` table."""

from datetime import timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, select, update

from pricepulse.config import Settings
from pricepulse.core.timeutils import utcnow
from pricepulse.db.session import Database
from pricepulse.models.scrape_job import ScrapeJob
from pricepulse.schemas.common import JobStatus, JobType
from pricepulse.scrapers.utils.retry import compute_backoff

logger = structlog.get_logger(__name__)

ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)

STALE_JOB_ERROR = "Max attempts exceeded (stale job)"


class JobQueue:
    """Priority queue with atomic claim operations.

    Higher priority runs first (HOT=10, WARM=5, COLD=1); within a priority
    band jobs run in enqueue order. Retries push ``available_at`` into the
    future instead of re-inserting, so a job keeps its id and history.
    """

    def __init__(self, db: Database, settings: Settings):
        self.db = db
        self.settings = settings
        self.logger = logger.bind(service="job_queue")

    async def enqueue(
        self,
        job_type: JobType,
        payload: Dict[str, Any],
        priority: int = 1,
        dedupe_key: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> Optional[int]:
        """Add a job to the queue.

        Args:
            job_type: full_search or delta_refresh
            payload: Job arguments (``query`` or ``product_ids``)
            priority: Job priority (higher = more urgent)
            dedupe_key: Skip the insert while another pending/running job
                holds the same key
            max_attempts: Override RETRY_MAX_ATTEMPTS

        Returns:
            Job ID, or None if deduplicated
        """
        now = utcnow()
        async with self.db.session() as session:
            async with session.begin():
                if dedupe_key is not None:
                    existing = await session.scalar(
                        select(ScrapeJob.id)
                        .where(ScrapeJob.dedupe_key == dedupe_key, ScrapeJob.status.in_(ACTIVE_STATUSES))
                        .limit(1)
                    )
                    if existing is not None:
                        self.logger.debug("job_deduplicated", dedupe_key=dedupe_key, existing_job_id=existing)
                        return None

                job = ScrapeJob(
                    job_type=JobType(job_type).value,
                    payload=payload,
                    priority=priority,
                    status=JobStatus.PENDING.value,
                    attempt=0,
                    max_attempts=max_attempts or self.settings.RETRY_MAX_ATTEMPTS,
                    dedupe_key=dedupe_key,
                    enqueued_at=now,
                    available_at=now,
                )
                session.add(job)
                await session.flush()
                job_id = job.id

        self.logger.info(
            "job_enqueued",
            job_id=job_id,
            job_type=JobType(job_type).value,
            priority=priority,
            dedupe_key=dedupe_key,
        )
        return job_id

    async def claim_next(self, worker_id: str) -> Optional[ScrapeJob]:
        """Atomically claim the next available job.

        The select and the status change run in one transaction; Postgres
        skips rows locked by other claimers and SQLite serializes the
        whole transaction.

        Args:
            worker_id: Unique identifier for the worker claiming the job

        Returns:
            The claimed job (attempt already incremented), or None
        """
        now = utcnow()
        async with self.db.session() as session:
            async with session.begin():
                job = await session.scalar(
                    select(ScrapeJob)
                    .where(ScrapeJob.status == JobStatus.PENDING.value, ScrapeJob.available_at <= now)
                    .order_by(ScrapeJob.priority.desc(), ScrapeJob.id.asc())
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                if job is None:
                    return None

                job.status = JobStatus.RUNNING.value
                job.claimed_at = now
                job.worker_id = worker_id
                job.attempt = job.attempt + 1

        self.logger.debug("job_claimed", job_id=job.id, worker_id=worker_id, attempt=job.attempt)
        return job

    async def complete(self, job_id: int, result: Optional[Dict[str, Any]] = None) -> None:
        """Mark a job as completed."""
        async with self.db.session() as session:
            async with session.begin():
                await session.execute(
                    update(ScrapeJob)
                    .where(ScrapeJob.id == job_id)
                    .values(
                        status=JobStatus.COMPLETED.value,
                        completed_at=utcnow(),
                        error_message=None,
                        result=result,
                    )
                )

    async def fail(self, job_id: int, error_message: str, retryable: bool) -> JobStatus:
        """Record a failed attempt.

        Retryable failures go back to pending with exponential backoff until
        max_attempts is reached; anything else fails the job for good.

        Returns:
            The job's new status (pending or failed)
        """
        now = utcnow()
        async with self.db.session() as session:
            async with session.begin():
                job = await session.get(ScrapeJob, job_id, with_for_update=True)
                if job is None:
                    self.logger.warning("fail_unknown_job", job_id=job_id)
                    return JobStatus.FAILED

                job.error_message = error_message[:2000]
                if retryable and job.attempt < job.max_attempts:
                    delay = compute_backoff(
                        job.attempt,
                        self.settings.RETRY_BACKOFF_BASE_SECONDS,
                        self.settings.RETRY_BACKOFF_MULTIPLIER,
                        self.settings.RETRY_BACKOFF_MAX_SECONDS,
                    )
                    job.status = JobStatus.PENDING.value
                    job.available_at = now + timedelta(seconds=delay)
                    job.claimed_at = None
                    job.worker_id = None
                    new_status = JobStatus.PENDING
                else:
                    delay = None
                    job.status = JobStatus.FAILED.value
                    job.completed_at = now
                    new_status = JobStatus.FAILED
                attempt, max_attempts = job.attempt, job.max_attempts

        self.logger.info(
            "job_attempt_failed",
            job_id=job_id,
            attempt=attempt,
            max_attempts=max_attempts,
            retryable=retryable,
            new_status=new_status.value,
            retry_in_seconds=delay,
        )
        return new_status

    async def reclaim_stale_jobs(self) -> int:
        """Reset jobs stuck in 'running' past STALE_JOB_TIMEOUT_MINUTES.

        Jobs that still have attempts left go back to pending; the rest are
        marked failed.

        Returns:
            Number of jobs put back to pending
        """
        now = utcnow()
        cutoff = now - timedelta(minutes=self.settings.STALE_JOB_TIMEOUT_MINUTES)
        stale = (ScrapeJob.status == JobStatus.RUNNING.value, ScrapeJob.claimed_at < cutoff)

        async with self.db.session() as session:
            async with session.begin():
                reclaimed = await session.execute(
                    update(ScrapeJob)
                    .where(*stale, ScrapeJob.attempt < ScrapeJob.max_attempts)
                    .values(
                        status=JobStatus.PENDING.value,
                        claimed_at=None,
                        worker_id=None,
                        available_at=now,
                    )
                )
                exhausted = await session.execute(
                    update(ScrapeJob)
                    .where(*stale, ScrapeJob.attempt >= ScrapeJob.max_attempts)
                    .values(
                        status=JobStatus.FAILED.value,
                        error_message=STALE_JOB_ERROR,
                        completed_at=now,
                    )
                )

        if reclaimed.rowcount or exhausted.rowcount:
            self.logger.warning(
                "stale_jobs_reclaimed",
                reclaimed=reclaimed.rowcount,
                failed=exhausted.rowcount,
            )
        return reclaimed.rowcount

    async def get_queue_status(self) -> Dict[str, int]:
        """Get current queue statistics.

        Returns:
            Dict with counts for each status
        """
        async with self.db.session() as session:
            rows = await session.execute(
                select(ScrapeJob.status, func.count()).group_by(ScrapeJob.status)
            )
            stats = {status.value: 0 for status in JobStatus}
            for status, count in rows:
                if status in stats:
                    stats[status] = count
            return stats

    async def has_active_job(self, dedupe_key: str) -> bool:
        """Check whether a pending or running job holds this dedupe key."""
        async with self.db.session() as session:
            found = await session.scalar(
                select(ScrapeJob.id)
                .where(ScrapeJob.dedupe_key == dedupe_key, ScrapeJob.status.in_(ACTIVE_STATUSES))
                .limit(1)
            )
            return found is not None

    async def get_job(self, job_id: int) -> Optional[ScrapeJob]:
        async with self.db.session() as session:
            return await session.get(ScrapeJob, job_id)

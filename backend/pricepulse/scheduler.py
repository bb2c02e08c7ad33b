"""APScheduler-based refresh scheduler.

This module drives the periodic side of the system. Every cadence only
decides what to enqueue and when; scraping itself happens in the worker
pool, so a slow upstream never delays the schedule.

Cadences (UTC):
- metrics flush + tier update, hourly at :00
- HOT refresh (plus popular queries), hourly at :05
- WARM refresh, every 4 hours at :10
- COLD refresh, daily at 02:00
- search count decay, weekly on Monday at 03:00
"""

import hashlib
from typing import Awaitable, Callable, Dict, List

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from pricepulse.config import Settings
from pricepulse.schemas.common import JobType, Tier
from pricepulse.services.cache_service import search_cache_key
from pricepulse.services.job_queue import JobQueue
from pricepulse.services.metrics import ProductMetricsService

logger = structlog.get_logger(__name__)


def batch_dedupe_key(tier: Tier, product_ids: List[str]) -> str:
    digest = hashlib.md5(",".join(sorted(product_ids)).encode("utf-8")).hexdigest()[:16]
    return f"{JobType.DELTA_REFRESH.value}:{Tier(tier).value}:{digest}"


class RefreshScheduler:
    """Registers the cron cadences and turns each tick into queued jobs."""

    def __init__(self, queue: JobQueue, metrics: ProductMetricsService, settings: Settings):
        """Initialize refresh scheduler.

        Args:
            queue: Durable job queue the cadences enqueue into
            metrics: Metrics service for flushes, tiering and candidate selection
            settings: Application settings
        """
        self.queue = queue
        self.metrics = metrics
        self.settings = settings
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.logger = logger.bind(service="refresh_scheduler")

    def register_jobs(self) -> None:
        """Add the five cadences, replacing any previous registration."""
        self._add("metrics_flush", self.run_metrics_cycle, CronTrigger(minute=0, timezone="UTC"))
        self._add("refresh_hot", self.run_hot_cycle, CronTrigger(minute=5, timezone="UTC"))
        self._add(
            "refresh_warm",
            self._tier_runner(Tier.WARM),
            CronTrigger(hour="*/4", minute=10, timezone="UTC"),
        )
        self._add(
            "refresh_cold",
            self._tier_runner(Tier.COLD),
            CronTrigger(hour=2, minute=0, timezone="UTC"),
        )
        self._add(
            "search_count_decay",
            self.metrics.decay_search_counts,
            CronTrigger(day_of_week="mon", hour=3, minute=0, timezone="UTC"),
        )

    def _add(self, job_id: str, func: Callable[[], Awaitable], trigger: CronTrigger) -> None:
        job = self.scheduler.add_job(
            func=self._run_wrapper,
            trigger=trigger,
            args=[job_id, func],
            id=job_id,
            name=job_id.replace("_", " "),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.logger.info(
            "cadence_registered",
            job_id=job_id,
            trigger=str(trigger),
            next_run=job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None,
        )

    def _tier_runner(self, tier: Tier) -> Callable[[], Awaitable[int]]:
        async def run() -> int:
            return await self.enqueue_tier_refresh(tier)

        return run

    def start(self) -> None:
        """Register the cadences and start the scheduler."""
        if self.scheduler.running:
            self.logger.warning("scheduler_already_running")
            return
        self.register_jobs()
        self.scheduler.start()
        self.logger.info("scheduler_started")

    def stop(self) -> None:
        """Stop the scheduler, waiting for running ticks to finish."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            self.logger.info("scheduler_stopped")
        else:
            self.logger.warning("scheduler_not_running")

    def is_running(self) -> bool:
        return self.scheduler.running

    def get_jobs_status(self) -> Dict[str, Dict[str, str]]:
        """Next run time and trigger of every registered cadence."""
        jobs = {}
        for job in self.scheduler.get_jobs():
            jobs[job.id] = {
                "next_run": job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None,
                "trigger": str(job.trigger),
            }
        return jobs

    async def _run_wrapper(self, job_id: str, func: Callable[[], Awaitable]) -> None:
        """Run one tick; a failing tick never stops the scheduler."""
        try:
            await func()
        except Exception as e:
            self.logger.error("cadence_failed", job_id=job_id, error=str(e), exc_info=True)

    # ------------------------------------------------------------------
    # Cadence bodies
    # ------------------------------------------------------------------

    async def run_metrics_cycle(self) -> Dict[Tier, int]:
        """Flush ephemeral counters, then reassign every tier."""
        flushed = await self.metrics.flush_metrics_to_database()
        counts = await self.metrics.update_tiers()
        self.logger.info("metrics_cycle_complete", flushed=flushed, **{t.value.lower(): n for t, n in counts.items()})
        return counts

    async def run_hot_cycle(self) -> int:
        enqueued = await self.enqueue_tier_refresh(Tier.HOT)
        enqueued += await self.enqueue_popular_queries()
        return enqueued

    async def enqueue_tier_refresh(self, tier: Tier) -> int:
        """Enqueue delta_refresh jobs for a tier's due products.

        Products are batched REFRESH_BATCH_SIZE per job at the tier's
        priority. A batch identical to one already pending or running is
        skipped.

        Returns:
            Number of jobs enqueued
        """
        policy = self.settings.tier_policy(tier)
        candidates = await self.metrics.get_products_for_scraping(
            tier,
            interval_hours=policy.refresh_interval_hours,
            limit=policy.refresh_limit,
        )
        if not candidates:
            self.logger.info("tier_refresh_nothing_due", tier=policy.tier.value)
            return 0

        ids = [c.product_id for c in candidates]
        size = max(1, self.settings.REFRESH_BATCH_SIZE)
        enqueued = 0
        for start in range(0, len(ids), size):
            batch = ids[start:start + size]
            job_id = await self.queue.enqueue(
                JobType.DELTA_REFRESH,
                {"product_ids": batch, "tier": policy.tier.value},
                priority=policy.priority,
                dedupe_key=batch_dedupe_key(policy.tier, batch),
            )
            if job_id is not None:
                enqueued += 1

        self.logger.info(
            "tier_refresh_enqueued",
            tier=policy.tier.value,
            products=len(ids),
            jobs=enqueued,
            priority=policy.priority,
        )
        return enqueued

    async def enqueue_popular_queries(self) -> int:
        """Enqueue a full_search job per POPULAR_QUERIES entry at HOT priority."""
        priority = self.settings.tier_policy(Tier.HOT).priority
        enqueued = 0
        for query in self.settings.get_popular_queries():
            job_id = await self.queue.enqueue(
                JobType.FULL_SEARCH,
                {"query": query},
                priority=priority,
                dedupe_key=f"{JobType.FULL_SEARCH.value}:{search_cache_key(query)}",
            )
            if job_id is not None:
                enqueued += 1
        if enqueued:
            self.logger.info("popular_queries_enqueued", jobs=enqueued)
        return enqueued

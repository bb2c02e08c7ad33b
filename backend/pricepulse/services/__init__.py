"""Services module for caching, ingestion and refresh orchestration.

This module contains the service classes behind the read path (freshness
cache, search) and the write path (validation, delta merge, persistence,
metrics, job queue, worker pool).
"""

from pricepulse.services.cache_service import CacheService, search_cache_key
from pricepulse.services.delta_merge import DeltaComparison, MergeOptions, merge_results, should_rebuild
from pricepulse.services.job_queue import JobQueue
from pricepulse.services.metrics import ProductMetricsService, assign_tiers
from pricepulse.services.persistence import BatchUpsertResult, PersistenceWriter
from pricepulse.services.refresh_service import RefreshCoordinator, RefreshGuard, RefreshService
from pricepulse.services.search_service import SearchService
from pricepulse.services.validation import ValidationPipeline, ValidationResult
from pricepulse.services.worker_pool import WorkerPool

__all__ = [
    "CacheService",
    "search_cache_key",
    "DeltaComparison",
    "MergeOptions",
    "merge_results",
    "should_rebuild",
    "JobQueue",
    "ProductMetricsService",
    "assign_tiers",
    "BatchUpsertResult",
    "PersistenceWriter",
    "RefreshCoordinator",
    "RefreshGuard",
    "RefreshService",
    "SearchService",
    "ValidationPipeline",
    "ValidationResult",
    "WorkerPool",
]

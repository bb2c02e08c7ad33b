"""Pydantic data contracts shared between components."""

from pricepulse.schemas.cache import CacheEnvelope, SearchResponse
from pricepulse.schemas.common import TIER_PRIORITY, CacheSource, JobStatus, JobType, Tier
from pricepulse.schemas.product import ValidatedProduct

__all__ = [
    "CacheEnvelope",
    "SearchResponse",
    "ValidatedProduct",
    "CacheSource",
    "JobStatus",
    "JobType",
    "Tier",
    "TIER_PRIORITY",
]

"""Shared enumerations used across schemas, models and services."""

import enum


class Tier(str, enum.Enum):
    """Demand tier controlling refresh priority and cadence."""

    HOT = "HOT"
    WARM = "WARM"
    COLD = "COLD"


class CacheSource(str, enum.Enum):
    """Where the data inside a cache envelope came from."""

    FRESH = "fresh"
    CACHE = "cache"
    SCRAPER = "scraper"


class JobType(str, enum.Enum):
    """Kinds of scrape jobs the worker pool knows how to run."""

    FULL_SEARCH = "full_search"
    DELTA_REFRESH = "delta_refresh"


class JobStatus(str, enum.Enum):
    """Lifecycle states of a queued scrape job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# Queue priority per tier (higher runs first)
TIER_PRIORITY = {
    Tier.HOT: 10,
    Tier.WARM: 5,
    Tier.COLD: 1,
}

"""Cache envelope wire format and search response schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from pricepulse.schemas.common import CacheSource


class CacheEnvelope(BaseModel):
    """Value stored under a search cache key.

    Wire format: {"source", "fetchedAt" (ISO-8601), "is_stale", "data"}.
    """

    model_config = ConfigDict(populate_by_name=True)

    source: CacheSource = CacheSource.SCRAPER
    fetched_at: datetime = Field(alias="fetchedAt")
    is_stale: bool = False
    data: List[Dict[str, Any]] = Field(default_factory=list)

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True)


class SearchResponse(BaseModel):
    """Result of a search served from cache or from a cold-path scrape."""

    query: str
    source: CacheSource
    fetched_at: Optional[datetime] = None
    is_stale: bool = False
    results: List[Dict[str, Any]] = Field(default_factory=list)
    refresh_scheduled: bool = False
    degraded: bool = False

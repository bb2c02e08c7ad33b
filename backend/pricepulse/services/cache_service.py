"""Redis-backed freshness cache.

Search results are stored as JSON envelopes
``{"source", "fetchedAt", "is_stale", "data"}``. Staleness is computed on
read against a freshness threshold that is strictly shorter than the key's
TTL, so stale-but-unexpired data can be served while a refresh runs.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

import structlog
from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis, from_url
from redis.exceptions import RedisError

from pricepulse.core.exceptions import CacheWriteError
from pricepulse.core.timeutils import as_utc, utcnow
from pricepulse.schemas.cache import CacheEnvelope
from pricepulse.schemas.common import CacheSource

logger = structlog.get_logger(__name__)

SEARCH_KEY_PREFIX = "search:"

# Pre-envelope entries carry no timestamp; treat them as infinitely old
LEGACY_FETCHED_AT = datetime(1970, 1, 1, tzinfo=timezone.utc)

CacheItem = Union[Dict[str, Any], BaseModel]


def search_cache_key(query: str) -> str:
    """Cache key for a search query.

    Args:
        query: Raw user query

    Returns:
        ``search:<lowercased, trimmed query>``

    Raises:
        ValueError: If the query is blank
    """
    normalized = (query or "").strip().lower()
    if not normalized:
        raise ValueError("query must not be empty")
    return f"{SEARCH_KEY_PREFIX}{normalized}"


def _to_plain(items: Sequence[CacheItem]) -> List[Dict[str, Any]]:
    return [
        item.model_dump(mode="json") if isinstance(item, BaseModel) else dict(item)
        for item in items
    ]


class CacheService:
    """Async Redis cache service.

    Provides key-value caching with TTL, freshness envelopes, pattern
    invalidation and health checking. Read and write failures are logged
    and reported as None/False so callers always have a fallback path.
    """

    def __init__(self, redis_url: str, client: Optional[Redis] = None):
        """Initialize cache service.

        Args:
            redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
            client: Pre-built client; tests inject an in-memory double
        """
        self.redis_url = redis_url
        self._redis: Optional[Redis] = client
        self.logger = logger.bind(service="cache_service")

    async def get_client(self) -> Redis:
        """Get or create the Redis connection.

        Returns:
            Redis client instance
        """
        if self._redis is None:
            self._redis = from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
            self.logger.info("redis_connection_created", url=self.redis_url)

        return self._redis

    async def get(self, key: str) -> Optional[str]:
        """Get a raw value from cache.

        Args:
            key: Cache key

        Returns:
            Cached value as string, or None if not found or error
        """
        try:
            redis = await self.get_client()
            value = await redis.get(key)

            if value:
                self.logger.debug("cache_hit", key=key)
            else:
                self.logger.debug("cache_miss", key=key)

            return value

        except RedisError as e:
            self.logger.error("cache_get_failed", key=key, error=str(e), exc_info=True)
            return None

    async def set(self, key: str, value: str, ttl: int = 300) -> bool:
        """Set a raw value in cache with TTL.

        Args:
            key: Cache key
            value: Value to cache (string)
            ttl: Time-to-live in seconds

        Returns:
            True if successful, False on error
        """
        try:
            redis = await self.get_client()
            await redis.set(key, value, ex=ttl)
            self.logger.debug("cache_set", key=key, ttl=ttl, value_length=len(value))
            return True

        except RedisError as e:
            self.logger.error("cache_set_failed", key=key, error=str(e), exc_info=True)
            return False

    async def delete(self, key: str) -> bool:
        """Delete a key from cache.

        Returns:
            True if key was deleted, False if not found or error
        """
        try:
            redis = await self.get_client()
            result = await redis.delete(key)
            self.logger.debug("cache_delete", key=key, deleted=bool(result))
            return bool(result)

        except RedisError as e:
            self.logger.error("cache_delete_failed", key=key, error=str(e), exc_info=True)
            return False

    async def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching a pattern.

        Args:
            pattern: Redis pattern (e.g., "search:*")

        Returns:
            Number of keys deleted, 0 on error
        """
        try:
            redis = await self.get_client()

            keys = []
            async for key in redis.scan_iter(match=pattern, count=100):
                keys.append(key)

            deleted = await redis.delete(*keys) if keys else 0

            self.logger.info("cache_pattern_delete", pattern=pattern, keys_deleted=deleted)
            return deleted

        except RedisError as e:
            self.logger.error("cache_pattern_delete_failed", pattern=pattern, error=str(e), exc_info=True)
            return 0

    def _parse_envelope(self, key: str, raw: str) -> Optional[CacheEnvelope]:
        try:
            decoded = json.loads(raw)
        except ValueError:
            self.logger.warning("cache_entry_unreadable", key=key)
            return None

        if isinstance(decoded, list):
            # Bare list written before envelopes existed
            return CacheEnvelope(
                source=CacheSource.CACHE,
                fetched_at=LEGACY_FETCHED_AT,
                is_stale=True,
                data=[item for item in decoded if isinstance(item, dict)],
            )

        try:
            return CacheEnvelope.model_validate(decoded)
        except ValidationError as e:
            self.logger.warning("cache_entry_invalid", key=key, error=str(e))
            return None

    async def get_envelope(self, key: str) -> Optional[CacheEnvelope]:
        """Read the envelope stored under a key, as written.

        Returns:
            CacheEnvelope, or None on miss, error or unreadable entry
        """
        raw = await self.get(key)
        if raw is None:
            return None
        return self._parse_envelope(key, raw)

    async def get_with_metadata(
        self,
        key: str,
        freshness_threshold_minutes: int,
        now: Optional[datetime] = None,
    ) -> Optional[CacheEnvelope]:
        """Read an envelope and decide whether it is stale.

        Args:
            key: Cache key
            freshness_threshold_minutes: Age beyond which data is stale
            now: Clock override for tests

        Returns:
            Envelope with ``is_stale`` recomputed as
            ``now - fetched_at > threshold``, or None on miss/error
        """
        envelope = await self.get_envelope(key)
        if envelope is None:
            return None

        now = now or utcnow()
        age = now - as_utc(envelope.fetched_at)
        is_stale = age > timedelta(minutes=freshness_threshold_minutes)

        self.logger.debug(
            "cache_freshness_checked",
            key=key,
            age_seconds=int(age.total_seconds()),
            threshold_minutes=freshness_threshold_minutes,
            is_stale=is_stale,
        )
        return envelope.model_copy(update={"is_stale": is_stale})

    def build_envelope(self, data: Sequence[CacheItem], source: CacheSource) -> CacheEnvelope:
        return CacheEnvelope(
            source=source,
            fetched_at=utcnow(),
            is_stale=False,
            data=_to_plain(data),
        )

    async def set_envelope(
        self,
        key: str,
        data: Sequence[CacheItem],
        ttl: int,
        source: CacheSource = CacheSource.SCRAPER,
    ) -> bool:
        """Wrap data in a fresh envelope and store it.

        Args:
            key: Cache key
            data: Products (pydantic models or dicts)
            ttl: Hard expiry in seconds
            source: Envelope source label

        Returns:
            True if stored, False on error
        """
        envelope = self.build_envelope(data, source)
        return await self.set(key, envelope.to_wire(), ttl=ttl)

    async def write_envelope_atomic(
        self,
        key: str,
        data: Sequence[CacheItem],
        ttl: int,
        source: CacheSource = CacheSource.FRESH,
    ) -> CacheEnvelope:
        """Store an envelope in a single MULTI/EXEC round trip.

        Raises:
            CacheWriteError: If the write did not go through
        """
        envelope = self.build_envelope(data, source)
        try:
            redis = await self.get_client()
            async with redis.pipeline(transaction=True) as pipe:
                pipe.set(key, envelope.to_wire(), ex=ttl)
                await pipe.execute()
        except RedisError as e:
            self.logger.error("cache_atomic_write_failed", key=key, error=str(e))
            raise CacheWriteError(key, str(e)) from e

        self.logger.info(
            "cache_envelope_written",
            key=key,
            source=source.value,
            items=len(envelope.data),
            ttl=ttl,
        )
        return envelope

    async def health_check(self) -> bool:
        """Check Redis connectivity.

        Returns:
            True if Redis is healthy, False otherwise
        """
        try:
            redis = await self.get_client()
            await redis.ping()
            self.logger.debug("redis_health_check_ok")
            return True

        except (RedisError, OSError) as e:
            self.logger.error("redis_health_check_failed", error=str(e))
            return False

    async def close(self) -> None:
        """Close the Redis connection on shutdown."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("redis_connection_closed")

"""
Redis caching for venue availability maps.

CACHING STRATEGY
================

What we cache:
  - Venue availability maps (resource id -> free) for a date range
  - Cache key pattern: "availability:{venue_id}:{start}:{end}"

Why:
  - The seat picker asks for the same venue/range on every page load
  - Serving from Redis: ~1ms vs the range query over reservations

Invalidation strategy:
  - On reserve, finalize, expiry and vacate: delete all keys of the venue
  - TTL-based expiry as safety net (REDIS_CACHE_TTL)

  Key-prefix invalidation: all keys of a venue start with
  "availability:{venue_id}:" so we can SCAN and delete them.

Why NOT cache single-resource checks:
  - The reservation path must see committed rows, never a cached answer
  - A stale map only misleads the UI; the booking itself is re-checked
    under the resource lock
"""

import json
from datetime import date
from typing import Optional

from redis.exceptions import RedisError

from studyhall.core.config import get_settings
from studyhall.core.logging import get_logger
from studyhall.core.metrics import record_cache_operation
from studyhall.infrastructure.redis_client import get_redis

logger = get_logger(__name__)


def _venue_prefix(venue_id: int) -> str:
    return f"availability:{venue_id}:"


def _make_map_key(venue_id: int, start_date: date, end_date: date) -> str:
    return f"{_venue_prefix(venue_id)}{start_date.isoformat()}:{end_date.isoformat()}"


class AvailabilityCache:
    """Best-effort cache; every Redis error is logged and treated as a miss."""

    def __init__(self, ttl: Optional[int] = None):
        self.ttl = ttl if ttl is not None else get_settings().REDIS_CACHE_TTL

    async def get_venue_map(self, venue_id: int, start_date: date, end_date: date) -> Optional[dict[int, bool]]:
        client = await get_redis()
        if not client:
            return None

        key = _make_map_key(venue_id, start_date, end_date)
        try:
            data = await client.get(key)
        except RedisError as e:
            logger.error("cache_get_error", cache_key=key, error=str(e))
            return None

        if data is None:
            record_cache_operation("get", hit=False)
            logger.debug("cache_miss", cache_key=key)
            return None

        record_cache_operation("get", hit=True)
        logger.debug("cache_hit", cache_key=key)
        # JSON object keys are strings
        return {int(resource_id): free for resource_id, free in json.loads(data).items()}

    async def set_venue_map(
        self, venue_id: int, start_date: date, end_date: date, availability: dict[int, bool]
    ) -> None:
        client = await get_redis()
        if not client:
            return

        key = _make_map_key(venue_id, start_date, end_date)
        try:
            await client.setex(key, self.ttl, json.dumps(availability))
            logger.debug("cache_set", cache_key=key, ttl=self.ttl)
        except RedisError as e:
            logger.error("cache_set_error", cache_key=key, error=str(e))

    async def invalidate_venue(self, venue_id: int) -> None:
        """Delete every cached map of one venue."""
        client = await get_redis()
        if not client:
            return

        try:
            deleted = 0
            async for key in client.scan_iter(match=f"{_venue_prefix(venue_id)}*", count=100):
                await client.delete(key)
                deleted += 1
            logger.info("cache_invalidated", venue_id=venue_id, keys_deleted=deleted)
        except RedisError as e:
            logger.error("cache_invalidation_error", venue_id=venue_id, error=str(e))

    async def invalidate_venues(self, venue_ids) -> None:
        for venue_id in sorted(set(venue_ids)):
            await self.invalidate_venue(venue_id)


_cache: Optional[AvailabilityCache] = None


def get_availability_cache() -> AvailabilityCache:
    global _cache
    if _cache is None:
        _cache = AvailabilityCache()
    return _cache


async def get_cache_stats() -> dict:
    """Get Redis cache statistics for monitoring."""
    client = await get_redis()
    if not client:
        return {"status": "disabled"}

    try:
        info = await client.info("stats")
        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        return {
            "status": "connected",
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / max(hits + misses, 1) * 100, 2),
        }
    except RedisError as e:
        return {"status": "error", "error": str(e)}

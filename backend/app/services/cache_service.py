"""
Redis caching service for the train catalog.

CACHING STRATEGY
================

What we cache:
  - The station list            key "catalog:stations"
  - Train search results        key "catalog:search:{origin}:{destination}"

Why:
  - Station list and search are the most frequent reads on the booking flow
  - Stations, routes and timetables change only when the catalog is reseeded

What we never cache:
  - Seat maps, holds, bookings, payments. Seat availability changes every few
    seconds during a sale and a stale read would show a taken seat as free.

Invalidation strategy:
  - All catalog keys share the "catalog:" prefix; invalidate_catalog_cache()
    SCANs and deletes them after the catalog is reseeded.
  - TTL-based expiry as safety net (REDIS_CACHE_TTL).

Redis is optional: with REDIS_ENABLED=False, or when Redis is unreachable,
every call degrades to a miss and callers read from the database.
"""

import json
from typing import Any, Optional

import redis.asyncio as redis
from app.core.config import get_settings
from app.core.logging import get_logger
from app.core.metrics import record_cache_operation

logger = get_logger(__name__)
settings = get_settings()

CATALOG_PREFIX = "catalog:"

_redis_client: Optional[redis.Redis] = None


async def get_redis() -> Optional[redis.Redis]:
    """Get or create Redis connection. Returns None if Redis is disabled."""
    global _redis_client

    if not settings.REDIS_ENABLED:
        return None

    if _redis_client is None:
        try:
            _redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
            )
            await _redis_client.ping()
            logger.info("redis_connected", url=settings.REDIS_URL)
        except Exception as e:
            logger.error("redis_connection_failed", error=str(e))
            _redis_client = None
            return None

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection on shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


def stations_key() -> str:
    return f"{CATALOG_PREFIX}stations"


def search_key(origin_station_id: int, destination_station_id: int) -> str:
    return f"{CATALOG_PREFIX}search:{origin_station_id}:{destination_station_id}"


async def get_cached(key: str) -> Optional[Any]:
    client = await get_redis()
    if not client:
        return None

    try:
        data = await client.get(key)
        record_cache_operation("get", hit=data is not None)
        if data:
            logger.debug("cache_hit", key=key)
            return json.loads(data)
        logger.debug("cache_miss", key=key)
    except Exception as e:
        logger.error("cache_get_error", key=key, error=str(e))

    return None


async def set_cached(key: str, data: Any) -> None:
    """Cache a JSON-serializable value with the configured TTL."""
    client = await get_redis()
    if not client:
        return

    try:
        await client.setex(key, settings.REDIS_CACHE_TTL, json.dumps(data, default=str))
        logger.debug("cache_set", key=key, ttl=settings.REDIS_CACHE_TTL)
    except Exception as e:
        logger.error("cache_set_error", key=key, error=str(e))


async def invalidate_catalog_cache() -> None:
    client = await get_redis()
    if not client:
        return

    try:
        deleted = 0
        async for key in client.scan_iter(match=f"{CATALOG_PREFIX}*", count=100):
            await client.delete(key)
            deleted += 1
        logger.info("cache_invalidated", keys_deleted=deleted)
    except Exception as e:
        logger.error("cache_invalidation_error", error=str(e))


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
    except Exception as e:
        return {"status": "error", "error": str(e)}

"""
Redis caching service for the front-of-house "today" listing.

CACHING STRATEGY
================

What we cache:
  - Today's reservation listing responses (JSON-serialized)
  - Cache key pattern: "reservations:today:{date}:status={status}"

Why:
  - Hosts poll the today view constantly during service
  - Serving from Redis: ~1ms vs PostgreSQL with history rows: ~15-50ms

Invalidation strategy:
  - On any reservation write (create, edit, status change, cancel):
    delete every "reservations:today:*" key
  - The date is part of the key, so yesterday's entries never answer
    for today after midnight
  - Short TTL as safety net

Why NOT cache single reservations or paginated lists:
  - Detail and edit screens need the live status and history
  - Per-user pages are rarely re-read and have many key combinations

Redis is advisory only: when it is disabled or unreachable every call here
degrades to a no-op and the store is read directly.
"""

import json
from datetime import date
from typing import Optional

import redis.asyncio as redis

from table_booking.core.config import get_settings
from table_booking.core.logging import get_logger
from table_booking.core.metrics import record_cache_operation

logger = get_logger(__name__)
settings = get_settings()

TODAY_KEY_PREFIX = "reservations:today:"

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
        except (redis.RedisError, OSError) as e:
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


def _make_today_key(day: date, status: Optional[str]) -> str:
    return f"{TODAY_KEY_PREFIX}{day.isoformat()}:status={status or 'all'}"


async def get_cached_today(day: date, status: Optional[str]) -> Optional[dict]:
    client = await get_redis()
    if not client:
        return None

    key = _make_today_key(day, status)
    try:
        data = await client.get(key)
        record_cache_operation("get", hit=data is not None)
        if data:
            logger.debug("cache_hit", key=key)
            return json.loads(data)
        logger.debug("cache_miss", key=key)
    except redis.RedisError as e:
        logger.error("cache_get_error", key=key, error=str(e))

    return None


async def set_cached_today(day: date, status: Optional[str], data: dict) -> None:
    client = await get_redis()
    if not client:
        return

    key = _make_today_key(day, status)
    try:
        await client.setex(key, settings.REDIS_CACHE_TTL, json.dumps(data, default=str))
        logger.debug("cache_set", key=key, ttl=settings.REDIS_CACHE_TTL)
    except redis.RedisError as e:
        logger.error("cache_set_error", key=key, error=str(e))


async def invalidate_reservation_cache() -> None:
    """Drop every cached today listing. Uses SCAN over the key prefix."""
    client = await get_redis()
    if not client:
        return

    try:
        deleted = 0
        async for key in client.scan_iter(match=f"{TODAY_KEY_PREFIX}*", count=100):
            await client.delete(key)
            deleted += 1
        logger.info("cache_invalidated", keys_deleted=deleted)
    except redis.RedisError as e:
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
    except redis.RedisError as e:
        return {"status": "error", "error": str(e)}

"""
Redis client for the single-sensor response cache.

Cache access is best-effort: connection or command failures are logged and
treated as a miss, so a Redis outage never fails a request. When no
REDIS_URL is configured, caching is skipped silently.

CHANGELOG:
- 2026-10-09: Sensor bundle get/set helpers with TTL (STORY-014)
- 2026-10-08: Initial creation (STORY-014)

TODO:
- None
"""

import logging

import redis.asyncio as redis

from bms.src.models import SensorBundle, SensorRef

logger = logging.getLogger(__name__)


def sensor_cache_key(ref: SensorRef) -> str:
    """Return the cache key for one sensor ref."""
    return f"sensor:{ref.provider}:{ref.id}:{ref.part or ''}"


def get_redis(redis_url: str) -> redis.Redis:
    """Create an async Redis client for *redis_url*."""
    return redis.from_url(redis_url)


async def get_cached_bundle(redis_url: str, ref: SensorRef) -> SensorBundle | None:
    """Return the cached bundle for *ref*, or None on miss or failure."""
    if not redis_url:
        return None
    key = sensor_cache_key(ref)
    try:
        client = get_redis(redis_url)
        try:
            cached = await client.get(key)
        finally:
            await client.aclose()
    except Exception:
        logger.warning("Redis read failed for key %s", key, exc_info=True)
        return None
    if cached is None:
        return None
    try:
        return SensorBundle.model_validate_json(cached)
    except ValueError:
        logger.warning("Discarding unreadable cache entry %s", key, exc_info=True)
        return None


async def cache_bundle(redis_url: str, ref: SensorRef, bundle: SensorBundle, ttl_s: int) -> None:
    """Store *bundle* under the key for *ref* with a TTL (best-effort)."""
    if not redis_url or ttl_s <= 0:
        return
    key = sensor_cache_key(ref)
    try:
        client = get_redis(redis_url)
        try:
            await client.set(key, bundle.model_dump_json(by_alias=True), ex=ttl_s)
        finally:
            await client.aclose()
    except Exception:
        logger.warning("Redis write failed for key %s", key, exc_info=True)

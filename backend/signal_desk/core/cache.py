import redis.asyncio as redis
import json
import logging
import time
from typing import Any, Optional

from signal_desk.core.config import get_config

logger = logging.getLogger(__name__)

# Seconds to wait before retrying a Redis server that refused us
RECONNECT_INTERVAL = 30

SIGNAL_DATES_CACHE_KEY = "signals:dates"
SIGNAL_HISTORY_CACHE_PREFIX = "signals:history:"
SIGNAL_CACHE_PATTERN = "signals:*"


class RedisCache:
    _instance: Optional[redis.Redis] = None
    _last_failure: Optional[float] = None

    @classmethod
    async def get_client(cls) -> Optional[redis.Redis]:
        if cls._instance is None:
            if cls._last_failure and time.monotonic() - cls._last_failure < RECONNECT_INTERVAL:
                return None
            await cls._initialize()
        return cls._instance

    @classmethod
    async def _initialize(cls):
        url = get_config().REDIS_URL
        if not url:
            logger.debug("REDIS_URL not set, read cache disabled")
            cls._instance = None
            return
        try:
            cls._instance = redis.from_url(url, decode_responses=True)
            await cls._instance.ping()
            cls._last_failure = None
            logger.info("Redis connected successfully")
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            cls._instance = None
            cls._last_failure = time.monotonic()

    @classmethod
    async def close(cls):
        if cls._instance:
            await cls._instance.aclose()
            cls._instance = None
            logger.info("Redis connection closed")


async def get_redis_client() -> Optional[redis.Redis]:
    return await RedisCache.get_client()


async def get_cached_data(cache_key: str) -> Optional[Any]:
    client = await RedisCache.get_client()
    if not client:
        return None

    try:
        cached = await client.get(cache_key)
        if cached:
            return json.loads(cached)
    except Exception as e:
        logger.warning(f"Error loading cached data for key {cache_key}: {e}")
    return None


async def set_cached_data(cache_key: str, data: Any, expire_seconds: Optional[int] = None) -> bool:
    client = await RedisCache.get_client()
    if not client:
        return False

    try:
        ttl = expire_seconds or get_config().CACHE_TTL_SECONDS
        await client.set(cache_key, json.dumps(data), ex=ttl)
        logger.debug(f"Data cached with key: {cache_key}")
        return True
    except Exception as e:
        logger.warning(f"Error caching data for key {cache_key}: {e}")
        return False


async def invalidate_signal_cache() -> int:
    """Drop every cached signal read; returns number of keys removed."""
    client = await RedisCache.get_client()
    if not client:
        return 0

    try:
        keys = [key async for key in client.scan_iter(match=SIGNAL_CACHE_PATTERN)]
        if keys:
            await client.delete(*keys)
        return len(keys)
    except Exception as e:
        logger.warning(f"Error invalidating signal cache: {e}")
        return 0


def history_cache_key(day: str) -> str:
    return f"{SIGNAL_HISTORY_CACHE_PREFIX}{day}"

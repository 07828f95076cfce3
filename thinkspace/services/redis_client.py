"""
Optional Redis connection manager.

Provides an async Redis client singleton that degrades gracefully
when REDIS_URL is not set or Redis is unreachable. The event relay uses it
to carry stream events from standalone workers to the API process.
"""
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from thinkspace.config import get_settings
from thinkspace.utils.logger import get_logger

logger = get_logger(__name__)

_redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> Optional[aioredis.Redis]:
    """Connect to Redis if REDIS_URL is configured. Safe to call always."""
    global _redis_client

    url = get_settings().redis_url
    if not url:
        logger.info("redis.disabled")
        return None

    client = aioredis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=5,
        retry_on_timeout=True,
    )
    try:
        await client.ping()
    except (RedisError, OSError) as exc:
        logger.warning("redis.unavailable", extra={"error": str(exc)[:200]})
        await client.aclose()
        return None

    _redis_client = client
    logger.info("redis.connected")
    return _redis_client


async def close_redis() -> None:
    """Gracefully close the Redis connection pool."""
    global _redis_client
    if _redis_client is not None:
        client, _redis_client = _redis_client, None
        try:
            await client.aclose()
        except RedisError as exc:
            logger.debug("redis.close_failed", extra={"error": str(exc)[:200]})
        logger.info("redis.closed")


def get_redis() -> Optional[aioredis.Redis]:
    """Return the Redis client or None if unavailable."""
    return _redis_client


async def is_redis_healthy() -> bool:
    """Quick health probe; returns False rather than raising."""
    if _redis_client is None:
        return False
    try:
        return bool(await _redis_client.ping())
    except (RedisError, OSError):
        return False

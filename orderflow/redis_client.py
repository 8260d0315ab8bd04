"""
Redis connection for the notification list. Notifications are best-effort, so an unreachable
Redis at startup is reported, not fatal.
"""
import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from orderflow.config import settings

logger = logging.getLogger(__name__)

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def check_redis(queue_key: str) -> bool:
    """Ping Redis and log the notification backlog. False when Redis is unreachable."""
    r = await get_redis()
    try:
        await r.ping()
        backlog = await r.llen(queue_key)
    except RedisError as e:
        logger.warning("Redis unreachable at %s, notifications will fail until it is back: %s", settings.redis_url, e)
        return False
    logger.info("Redis ok, %d notifications waiting on %s", backlog, queue_key)
    return True


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None

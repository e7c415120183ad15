"""Shared Redis client used by the per-route rate limiter."""

import redis.asyncio as redis
import structlog

from tablexport.core.config import get_settings

logger = structlog.get_logger(__name__)

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None) -> None:
    """Connect to Redis. A failed ping leaves the client unset and is logged.

    The rate limiter treats a missing client as "no limiting", so a Redis
    outage never takes the API down.
    """
    global _redis

    if _redis is not None:
        return

    settings = get_settings()
    client = redis.from_url(
        url or settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    try:
        await client.ping()
    except redis.RedisError as exc:
        logger.warning("redis_unavailable", error=str(exc))
        await client.aclose()
        return

    _redis = client


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis:
    """Return the shared Redis client.

    Raises RuntimeError if init_redis() has not been called or failed.
    """
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis

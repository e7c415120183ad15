"""Fixed-window request counters in Redis, keyed by route and caller."""

import time
from collections.abc import Callable

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from tablexport.gate.routes import RateLimit

logger = structlog.get_logger(__name__)


class RateLimiter:
    def __init__(self, redis: Redis, clock: Callable[[], float] = time.time):
        self.redis = redis
        self.clock = clock

    async def hit(self, route: str, identity: str, limit: RateLimit, now: float | None = None) -> bool:
        """Count one request. Returns False once the window's budget is spent.

        Redis errors are logged and the request is allowed.
        """
        now = self.clock() if now is None else now
        window = int(now // limit.window_seconds)
        key = f"ratelimit:{route}:{identity}:{window}"
        try:
            count = await self.redis.incr(key)
            if count == 1:
                await self.redis.expire(key, limit.window_seconds)
        except RedisError as exc:
            logger.warning("rate_limit_unavailable", route=route, error=str(exc))
            return True

        if count > limit.requests:
            logger.info("rate_limit_exceeded", route=route, identity=identity, count=count)
            return False
        return True

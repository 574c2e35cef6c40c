"""Redis async connection pool."""

from functools import lru_cache

import redis.asyncio as aioredis

from ride_dispatch.config import settings


@lru_cache(maxsize=1)
def _pool() -> aioredis.ConnectionPool:
    return aioredis.ConnectionPool.from_url(settings.redis_url, decode_responses=True)


async def get_redis() -> aioredis.Redis:
    """Return a Redis client backed by the shared connection pool."""
    return aioredis.Redis(connection_pool=_pool())

"""
Redis infrastructure configuration

Async connection pool for health checks, and sync clients for RQ.
"""

from typing import Optional

from redis import Redis as SyncRedis
from redis import asyncio as aioredis

from kindred.core.config import settings

# Global redis pool
pool: Optional[aioredis.ConnectionPool] = None


async def init_redis_pool():
    """Initialize Redis connection pool"""
    global pool
    pool = aioredis.ConnectionPool.from_url(
        settings.redis_url,
        db=settings.redis_db,
        encoding="utf-8",
        decode_responses=True,
    )


async def close_redis_pool():
    """Close Redis connection pool"""
    global pool
    if pool:
        await pool.disconnect()
        pool = None


async def ping_redis() -> bool:
    if pool is None:
        await init_redis_pool()
    client = aioredis.Redis(connection_pool=pool)
    try:
        return bool(await client.ping())
    finally:
        await client.aclose()


def sync_redis() -> SyncRedis:
    """RQ only speaks to a synchronous client"""
    return SyncRedis.from_url(settings.redis_url)

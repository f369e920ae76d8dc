"""Shared Redis client for the tenant context, the read cache and JWT revocation."""

from __future__ import annotations

import redis.asyncio as redis

from tenantgate.core.config import get_settings

settings = get_settings()

_redis_pool: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    """The process-wide client, created on first use.

    Timeouts surface as ``RedisError`` so a slow Redis puts the tenant context
    into its error state rather than stalling the request.
    """
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.redis_timeout_seconds,
            socket_connect_timeout=settings.redis_timeout_seconds,
            health_check_interval=30,
        )
    return _redis_pool


async def redis_ready() -> bool:
    client = await get_redis()
    return bool(await client.ping())


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None

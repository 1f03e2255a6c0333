from functools import lru_cache

import redis.asyncio as redis

from ..config import get_settings


@lru_cache
def get_redis_client() -> redis.Redis:
    """
    Get the shared Redis client.

    The client opens connections on first use and keeps them pooled, so
    creating it here never touches the network.
    """
    settings = get_settings()
    return redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password or None,
        db=settings.redis_db,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_socket_timeout,
        decode_responses=True,
    )


async def close_redis_client() -> None:
    """Close the shared client if it was ever created."""
    if get_redis_client.cache_info().currsize:
        await get_redis_client().aclose()
        get_redis_client.cache_clear()

"""
Redis Infrastructure
====================

Async Redis client factory (redis-py asyncio).
"""

import redis.asyncio as aioredis


def create_redis_client(redis_url: str, **kwargs) -> aioredis.Redis:
    """
    Create an async Redis client.

    Responses are decoded to str; the connection is opened lazily on the
    first command.
    """
    options = {"decode_responses": True, "socket_connect_timeout": 5}
    options.update(kwargs)
    return aioredis.from_url(redis_url, **options)

"""
Redis client utilities for basecore.

Provides lazy-initialized Redis client to avoid import-time connections.
Redis is optional for the bridge: without REDIS_URL the helpers return None.
"""

import functools

import redis.asyncio as aioredis

from basecore.settings import get_settings


@functools.lru_cache()
def get_redis_url() -> str | None:
    """Get Redis URL from settings."""
    return get_settings().REDIS_URL


@functools.lru_cache()
def get_redis_client() -> aioredis.Redis | None:
    """
    Get async Redis client (cached).

    Returns None when REDIS_URL is not configured.
    """
    url = get_redis_url()
    if not url:
        return None
    return aioredis.from_url(url, decode_responses=True)

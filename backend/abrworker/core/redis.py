"""Redis connection configuration."""

import redis.asyncio as redis

from abrworker.core.config import settings


def create_redis(url: str = "") -> redis.Redis:
    """Create a Redis client for the given URL (settings.REDIS_URL by default)."""
    return redis.from_url(url or settings.REDIS_URL, decode_responses=True)

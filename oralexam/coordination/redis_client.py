"""
oralexam/coordination/redis_client.py
Process-wide Redis connection used by the capacity gates.

Redis is authoritative for live concurrency; nothing is counted in memory.
"""
import logging
from typing import Optional

import redis.asyncio as aioredis

from oralexam.config.settings import settings

logger = logging.getLogger(__name__)

_redis: Optional[aioredis.Redis] = None


def get_redis() -> aioredis.Redis:
    """Get (or lazily create) the shared Redis client."""
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        logger.info("Redis client created")
    return _redis


def set_redis(client: Optional[aioredis.Redis]) -> None:
    """Replace the shared client (used by the CLI and tests)."""
    global _redis
    _redis = client


async def close_redis() -> None:
    """Close the shared client if one was created."""
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
        logger.info("Redis connection closed")

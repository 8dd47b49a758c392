"""
Shared Redis client accessor.

Redis is optional. Wallet events are published here when it is configured
and silently skipped when it is not.
"""

import redis.asyncio as aioredis
from typing import Optional
import json
import logging

logger = logging.getLogger(__name__)

_redis_client: Optional[aioredis.Redis] = None


async def init_redis(url: str) -> aioredis.Redis:
    """Initialize the shared Redis connection. Called once during app lifespan startup."""
    global _redis_client
    _redis_client = aioredis.from_url(url, encoding="utf-8", decode_responses=False)
    await _redis_client.ping()
    return _redis_client


def get_redis_client() -> Optional[aioredis.Redis]:
    """Get the shared Redis client. Returns None if not initialized."""
    return _redis_client


async def publish_event(channel: str, payload: dict) -> bool:
    """Publish a JSON event. Returns False when Redis is down or not configured."""
    client = get_redis_client()
    if client is None:
        return False
    try:
        await client.publish(channel, json.dumps(payload, default=str))
        return True
    except aioredis.RedisError as e:
        logger.warning(f"Event publish to {channel} failed: {e}")
        return False


async def close_redis() -> None:
    """Close the shared Redis connection. Called during app lifespan shutdown."""
    global _redis_client
    if _redis_client:
        await _redis_client.close()
        _redis_client = None

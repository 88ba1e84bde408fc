from typing import Optional

from redis import asyncio as aioredis

from experiment_engine.config import get_settings

redis_client: Optional[aioredis.Redis] = None


async def get_redis() -> Optional[aioredis.Redis]:
    """Get Redis client, or None when no REDIS_URL is configured"""
    global redis_client
    settings = get_settings()
    if not settings.REDIS_URL:
        return None
    if redis_client is None:
        redis_client = aioredis.from_url(
            settings.REDIS_URL,
            password=settings.REDIS_PASSWORD if settings.REDIS_PASSWORD else None,
            encoding="utf-8",
            decode_responses=True,
        )
    return redis_client


async def close_redis():
    """Close Redis connection"""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None

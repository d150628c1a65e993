# infrastructure/redis_client.py

import redis.asyncio as redis

from config.settings import settings
from core.logger import logger


async def get_redis_client():
    """
    Creates an async Redis client for one collection run.
    Returns:
        redis.Redis: async Redis client instance, or None if it could not be created
    """
    try:
        client = redis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            password=settings.REDIS_PASSWORD,
            decode_responses=True,
            socket_timeout=settings.REDIS_TIMEOUT,
        )
        logger.debug(f"Async Redis client initialized for {settings.REDIS_HOST}:{settings.REDIS_PORT}")
        return client
    except Exception as e:
        logger.error(f"Error creating async Redis connection: {e}")
        return None

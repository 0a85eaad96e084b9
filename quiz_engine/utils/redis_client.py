"""
Redis connection helper shared by the document store, lease lock and event bus
"""
import redis
import logging
from typing import Optional

from quiz_engine.config import settings

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None


def get_redis_client(url: str = None) -> redis.Redis:
    """
    Return a process-wide Redis client

    Unlike a cache, the engine cannot run with Redis missing when a Redis
    backend is configured, so connection failures propagate.
    """
    global _client

    if _client is not None and url is None:
        return _client

    client = redis.from_url(
        url or settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=5
    )
    client.ping()
    logger.info("Redis connection established")

    if url is None:
        _client = client
    return client

"""
Redis implementation of the key/value cache.

Shared between every process of the fleet (controller, admin tooling,
request handlers), so load-balancer state such as the round-robin index is
seen by all of them.
"""

import logging

import redis.asyncio as redis

from fleet_common.cache import KeyValueCache

logger = logging.getLogger(__name__)


class RedisCache(KeyValueCache):
    """KeyValueCache backed by a Redis server."""

    def __init__(self, redis_client: redis.Redis):
        """
        Initialize the cache.

        Args:
            redis_client: Redis client instance (decode_responses=True)
        """
        self.redis = redis_client

    @classmethod
    def from_url(cls, url: str) -> "RedisCache":
        return cls(redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> str | None:
        value = await self.redis.get(key)
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self.redis.set(key, value, ex=ttl)

    async def delete(self, key: str) -> None:
        await self.redis.delete(key)

    async def close(self) -> None:
        await self.redis.aclose()
        logger.debug("Redis cache connection closed")

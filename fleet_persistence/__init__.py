"""
Fleet Persistence module.

This module contains the database implementation of the fleet mirror and
the cache backends. Currently supports SQLite for the mirror, and Redis or
an in-process dictionary for the cache.

The persistence layer depends on fleet_common for domain models and
interfaces, and is used by both fleet_controller and fleet_admin.
"""

from fleet_common.cache import KeyValueCache

from .memory_cache import MemoryCache
from .redis_cache import RedisCache
from .sqlite_repository import SQLiteFleetRepository


def create_cache(redis_url: str | None) -> KeyValueCache:
    """
    Build the cache backend for a process.

    Args:
        redis_url: Redis connection URL, or None for an in-process cache
    """
    if redis_url:
        return RedisCache.from_url(redis_url)
    return MemoryCache()


__all__ = ["MemoryCache", "RedisCache", "SQLiteFleetRepository", "create_cache"]

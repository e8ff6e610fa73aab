"""
Key/value cache contract.

The cache holds instance snapshots and load-balancer state. It is an
accelerator over the mirror, never the only copy of authoritative data:
every entry may expire or be evicted at any time.
"""

from abc import ABC, abstractmethod

INSTANCE_KEY = "fleet:instance:{instance_id}"
ROUND_ROBIN_KEY = "fleet:loadbalancer:{cluster}:index"


def instance_key(instance_id: str) -> str:
    return INSTANCE_KEY.format(instance_id=instance_id)


def round_robin_key(cluster: str) -> str:
    return ROUND_ROBIN_KEY.format(cluster=cluster)


class KeyValueCache(ABC):
    """Shared string cache with per-key TTL expiry."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the value, or None if missing or expired."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None:
        """
        Store a value.

        Args:
            key: Cache key
            value: String value
            ttl: Seconds until expiry
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

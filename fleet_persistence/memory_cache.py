"""
In-process implementation of the key/value cache.

Used when no Redis server is configured: a single controller process, the
admin CLI, and tests. State is not shared between processes.
"""

import time
from collections.abc import Callable

from fleet_common.cache import KeyValueCache


class MemoryCache(KeyValueCache):
    """Dictionary-backed KeyValueCache with lazy expiry."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}  # key -> (value, expires_at)

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: int) -> None:
        self._entries[key] = (value, self._clock() + ttl)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def close(self) -> None:
        self._entries.clear()

"""
Counter stores backing the dispatch guard.

Every worker process must see the same counters, so production uses Redis.
The in-memory store is for tests and single-process runs.
"""
import asyncio
import logging
import math
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class CounterStore(Protocol):
    async def increment(self, key: str, ttl: float) -> int: ...

    async def get(self, key: str) -> Optional[int]: ...

    async def set(self, key: str, value: int, ttl: float) -> None: ...


def _ttl_seconds(ttl: float) -> int:
    return max(1, int(math.ceil(ttl)))


class RedisCounterStore:
    """INCR + EXPIRE on first increment, so the TTL window starts with the first hit."""

    def __init__(self, client: "redis.Redis"):
        self.client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        return cls(redis.from_url(url, decode_responses=True))

    async def increment(self, key: str, ttl: float) -> int:
        value = await self.client.incr(key)
        if value == 1:
            await self.client.expire(key, _ttl_seconds(ttl))
        return int(value)

    async def get(self, key: str) -> Optional[int]:
        value = await self.client.get(key)
        if value is None:
            return None
        return int(value)

    async def set(self, key: str, value: int, ttl: float) -> None:
        await self.client.set(key, int(value), ex=_ttl_seconds(ttl))

    async def close(self):
        await self.client.aclose()


class InMemoryCounterStore:
    """TTL-bounded counters in a dict. The clock is injectable for tests."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._values: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[Tuple[int, float]]:
        entry = self._values.get(key)
        if entry is None:
            return None
        if entry[1] <= self.clock():
            del self._values[key]
            return None
        return entry

    async def increment(self, key: str, ttl: float) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                value, expires_at = 1, self.clock() + ttl
            else:
                value, expires_at = entry[0] + 1, entry[1]
            self._values[key] = (value, expires_at)
            return value

    async def get(self, key: str) -> Optional[int]:
        async with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: int, ttl: float) -> None:
        async with self._lock:
            self._values[key] = (int(value), self.clock() + ttl)

    async def close(self):
        self._values.clear()

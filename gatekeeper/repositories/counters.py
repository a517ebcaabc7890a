"""Shared counter store used by the rate limiter and the behavior detector."""

from __future__ import annotations

import asyncio
import math
import time
from abc import ABC, abstractmethod
from bisect import insort
from typing import Any, Awaitable, Callable, TypeVar

from redis.asyncio import Redis

from ..core.errors import BackingStoreUnavailable
from ..domain.rate_limits import WindowUpdate
from ..telemetry import STORE_FAILURES, STORE_LATENCY

T = TypeVar("T")

# KEYS[1] = log key; ARGV = now_ms, window_ms, limit, entry_id
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
local remaining = 0
if count < limit then
  redis.call('ZADD', key, now, member)
  redis.call('PEXPIRE', key, window * 2)
  allowed = 1
  remaining = limit - count - 1
end

local reset_at = now + window
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if oldest[2] then
  reset_at = tonumber(oldest[2]) + window
end
return {allowed, remaining, reset_at}
"""


async def guarded_store_call(
    operation: str,
    call: Awaitable[T],
    *,
    timeout: float,
    key: str | None = None,
) -> T:
    """Await a single store round trip, bounding it by ``timeout``.

    Any failure raised while awaiting the store, timeouts included, surfaces
    as ``BackingStoreUnavailable``; cancellation is left alone.
    """

    with STORE_LATENCY.labels(operation=operation).time():
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except Exception as exc:
            STORE_FAILURES.labels(operation=operation).inc()
            raise BackingStoreUnavailable(operation, key) from exc


class CounterStore(ABC):
    """Interface of the external store shared by every process instance."""

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Atomically increment a scalar counter, creating it at 1."""

    @abstractmethod
    async def expire(self, key: str, seconds: int) -> bool:
        """Set the key's time-to-live. Returns False when the key is absent."""

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """Remaining time-to-live in seconds; -1 without expiry, -2 when absent."""

    @abstractmethod
    async def sadd(self, key: str, member: str) -> int:
        """Add a member to a set, returning how many members were new."""

    @abstractmethod
    async def scard(self, key: str) -> int:
        """Return the cardinality of a set."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def setex(self, key: str, seconds: int, value: str) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> int:
        ...

    @abstractmethod
    async def execute_atomic_window_update(
        self,
        key: str,
        now_ms: int,
        window_ms: int,
        limit: int,
        entry_id: str,
    ) -> WindowUpdate:
        """Prune, count and conditionally append to a sliding log in one step."""


class RedisCounterStore(CounterStore):
    """Counter store backed by Redis; the sliding log is a sorted set."""

    def __init__(self, client: Redis) -> None:
        self._client = client
        self._window_script = client.register_script(SLIDING_WINDOW_SCRIPT)

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float) -> "RedisCounterStore":
        client = Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
        )
        return cls(client)

    async def incr(self, key: str) -> int:
        return int(await self._client.incr(key))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self._client.expire(key, seconds))

    async def ttl(self, key: str) -> int:
        return int(await self._client.ttl(key))

    async def sadd(self, key: str, member: str) -> int:
        return int(await self._client.sadd(key, member))

    async def scard(self, key: str) -> int:
        return int(await self._client.scard(key))

    async def exists(self, key: str) -> bool:
        return int(await self._client.exists(key)) == 1

    async def setex(self, key: str, seconds: int, value: str) -> None:
        await self._client.setex(key, seconds, value)

    async def delete(self, key: str) -> int:
        return int(await self._client.delete(key))

    async def execute_atomic_window_update(
        self,
        key: str,
        now_ms: int,
        window_ms: int,
        limit: int,
        entry_id: str,
    ) -> WindowUpdate:
        allowed, remaining, reset_at = await self._window_script(
            keys=[key],
            args=[now_ms, window_ms, limit, entry_id],
        )
        return WindowUpdate(
            allowed=bool(int(allowed)),
            remaining=int(remaining),
            reset_at_ms=int(reset_at),
        )

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryCounterStore(CounterStore):
    """Single-process store for tests and local development.

    Each operation yields to the event loop once, like a network hop, and then
    runs to completion without another suspension point, so every operation
    (including the sliding window update) is atomic with respect to other
    coroutines. Expiry follows the injected clock.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, Any] = {}
        self._expires_at: dict[str, float] = {}

    def _now(self) -> float:
        return self._clock()

    def _live(self, key: str) -> bool:
        deadline = self._expires_at.get(key)
        if deadline is not None and deadline <= self._now():
            self._data.pop(key, None)
            self._expires_at.pop(key, None)
        return key in self._data

    async def incr(self, key: str) -> int:
        await asyncio.sleep(0)
        value = int(self._data[key]) + 1 if self._live(key) else 1
        self._data[key] = value
        return value

    async def expire(self, key: str, seconds: int) -> bool:
        await asyncio.sleep(0)
        if not self._live(key):
            return False
        self._expires_at[key] = self._now() + seconds
        return True

    async def ttl(self, key: str) -> int:
        await asyncio.sleep(0)
        if not self._live(key):
            return -2
        deadline = self._expires_at.get(key)
        if deadline is None:
            return -1
        return max(math.ceil(deadline - self._now()), 0)

    async def sadd(self, key: str, member: str) -> int:
        await asyncio.sleep(0)
        if not self._live(key):
            self._data[key] = set()
        members: set[str] = self._data[key]
        if member in members:
            return 0
        members.add(member)
        return 1

    async def scard(self, key: str) -> int:
        await asyncio.sleep(0)
        if not self._live(key):
            return 0
        return len(self._data[key])

    async def exists(self, key: str) -> bool:
        await asyncio.sleep(0)
        return self._live(key)

    async def setex(self, key: str, seconds: int, value: str) -> None:
        await asyncio.sleep(0)
        self._data[key] = value
        self._expires_at[key] = self._now() + seconds

    async def delete(self, key: str) -> int:
        await asyncio.sleep(0)
        if not self._live(key):
            return 0
        self._data.pop(key, None)
        self._expires_at.pop(key, None)
        return 1

    async def execute_atomic_window_update(
        self,
        key: str,
        now_ms: int,
        window_ms: int,
        limit: int,
        entry_id: str,
    ) -> WindowUpdate:
        await asyncio.sleep(0)
        entries: list[tuple[int, str]] = self._data[key] if self._live(key) else []
        cutoff = now_ms - window_ms
        entries = [entry for entry in entries if entry[0] > cutoff]

        allowed = len(entries) < limit
        remaining = 0
        if allowed:
            remaining = limit - len(entries) - 1
            insort(entries, (now_ms, entry_id))
            self._expires_at[key] = self._now() + (window_ms * 2) / 1000
        self._data[key] = entries

        reset_at = entries[0][0] + window_ms if entries else now_ms + window_ms
        return WindowUpdate(allowed=allowed, remaining=remaining, reset_at_ms=reset_at)

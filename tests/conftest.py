"""Pytest configuration and fixtures for admission pipeline tests."""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from gatekeeper.domain.rate_limits import WindowUpdate
from gatekeeper.repositories.counters import CounterStore, InMemoryCounterStore

BROWSER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# 30 seconds into a 60 second bucket
BASE_TIME = 1_700_000_010.0


class FakeClock:
    """Manually advanced wall clock shared by the limiter and the fake store."""

    def __init__(self, start: float = BASE_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def set(self, value: float) -> None:
        self.now = value


class RecordingCounterStore(InMemoryCounterStore):
    """In-memory store that remembers which operations were issued."""

    def __init__(self, clock):
        super().__init__(clock)
        self.calls = []

    async def incr(self, key):
        self.calls.append(("incr", key))
        return await super().incr(key)

    async def expire(self, key, seconds):
        self.calls.append(("expire", key))
        return await super().expire(key, seconds)

    async def ttl(self, key):
        self.calls.append(("ttl", key))
        return await super().ttl(key)

    async def sadd(self, key, member):
        self.calls.append(("sadd", key))
        return await super().sadd(key, member)

    async def scard(self, key):
        self.calls.append(("scard", key))
        return await super().scard(key)

    async def exists(self, key):
        self.calls.append(("exists", key))
        return await super().exists(key)

    async def execute_atomic_window_update(self, key, now_ms, window_ms, limit, entry_id):
        self.calls.append(("atomic_window_update", key))
        return await super().execute_atomic_window_update(
            key, now_ms, window_ms, limit, entry_id
        )


class FailingCounterStore(CounterStore):
    """Every operation fails as if Redis were unreachable."""

    def __init__(self):
        self.attempts = 0

    async def _fail(self):
        self.attempts += 1
        raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    async def incr(self, key):
        return await self._fail()

    async def expire(self, key, seconds):
        return await self._fail()

    async def ttl(self, key):
        return await self._fail()

    async def sadd(self, key, member):
        return await self._fail()

    async def scard(self, key):
        return await self._fail()

    async def exists(self, key):
        return await self._fail()

    async def setex(self, key, seconds, value):
        return await self._fail()

    async def delete(self, key):
        return await self._fail()

    async def execute_atomic_window_update(
        self, key, now_ms, window_ms, limit, entry_id
    ) -> WindowUpdate:
        return await self._fail()


class BrokenCounterStore(FailingCounterStore):
    """Store that fails with errors outside the Redis and OS families,
    like a buggy store implementation or an unparseable reply."""

    async def _fail(self):
        self.attempts += 1
        raise RuntimeError("unexpected reply from counter store")

    async def execute_atomic_window_update(
        self, key, now_ms, window_ms, limit, entry_id
    ) -> WindowUpdate:
        self.attempts += 1
        raise ValueError("invalid literal for int() with base 10: 'OK'")


class SlowCounterStore(InMemoryCounterStore):
    """Store whose round trips never finish within any sane timeout."""

    delay = 5.0

    async def incr(self, key):
        await asyncio.sleep(self.delay)
        return await super().incr(key)

    async def sadd(self, key, member):
        await asyncio.sleep(self.delay)
        return await super().sadd(key, member)

    async def exists(self, key):
        await asyncio.sleep(self.delay)
        return await super().exists(key)

    async def execute_atomic_window_update(self, key, now_ms, window_ms, limit, entry_id):
        await asyncio.sleep(self.delay)
        return await super().execute_atomic_window_update(
            key, now_ms, window_ms, limit, entry_id
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryCounterStore(clock)


@pytest.fixture
def recording_store(clock):
    return RecordingCounterStore(clock)


@pytest.fixture
def failing_store():
    return FailingCounterStore()


@pytest.fixture
def broken_store():
    return BrokenCounterStore()


@pytest.fixture
def slow_store(clock):
    return SlowCounterStore(clock)

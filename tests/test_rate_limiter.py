"""
Tests for the fixed and sliding window rate limiters.

Property: for any limit, concurrent sliding window checks against the same
key admit exactly ``limit`` requests, and store failures never deny a request.
"""

import asyncio

import pytest
from hypothesis import given, strategies as st, settings
from structlog.testing import capture_logs

from gatekeeper.domain.rate_limits import RateLimitAlgorithm, RateLimitConfig
from gatekeeper.repositories.counters import InMemoryCounterStore
from gatekeeper.services.rate_limiter import (
    RateLimiter,
    fixed_window_key,
    sliding_window_key,
)

from conftest import BASE_TIME, FakeClock


def _config(limit=3, window_seconds=60, identifier="203.0.113.7", endpoint_key="status"):
    return RateLimitConfig(
        limit=limit,
        window_seconds=window_seconds,
        identifier=identifier,
        endpoint_key=endpoint_key,
    )


def test_fixed_window_counts_down_then_denies(store, clock):
    limiter = RateLimiter(store, clock=clock)
    config = _config()

    async def run():
        return [await limiter.fixed_window(config) for _ in range(4)]

    results = asyncio.run(run())

    assert [r.allowed for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]
    expected_reset = int(BASE_TIME * 1000) + 60_000
    assert all(r.reset_at_ms == expected_reset for r in results)


def test_fixed_window_allows_burst_across_bucket_boundary(store, clock):
    limiter = RateLimiter(store, clock=clock)
    config = _config()

    async def run():
        clock.advance(29)  # last second of the bucket
        before = [await limiter.fixed_window(config) for _ in range(3)]
        clock.advance(2)  # first second of the next bucket
        after = [await limiter.fixed_window(config) for _ in range(3)]
        return before + after

    results = asyncio.run(run())

    assert all(r.allowed for r in results)


def test_fixed_window_restores_missing_expiry(store, clock):
    limiter = RateLimiter(store, clock=clock)
    config = _config()
    key = fixed_window_key(config, clock())

    async def run():
        await store.incr(key)  # counter created without a TTL
        result = await limiter.fixed_window(config)
        return result, await store.ttl(key)

    result, ttl = asyncio.run(run())

    assert result.allowed is True
    assert result.remaining == 1
    assert ttl == 60


def test_sliding_window_resets_when_oldest_entry_expires(store, clock):
    limiter = RateLimiter(store, clock=clock)
    config = _config()

    async def run():
        admitted = []
        for offset in (1, 2, 3):
            clock.set(BASE_TIME + offset)
            admitted.append(await limiter.sliding_window(config))
        clock.set(BASE_TIME + 4)
        denied = await limiter.sliding_window(config)
        clock.set(BASE_TIME + 61)
        reopened = await limiter.sliding_window(config)
        return admitted, denied, reopened

    admitted, denied, reopened = asyncio.run(run())

    assert [r.remaining for r in admitted] == [2, 1, 0]
    assert all(r.allowed for r in admitted)
    assert denied.allowed is False
    assert denied.remaining == 0
    assert denied.reset_at_ms == int((BASE_TIME + 1) * 1000) + 60_000
    assert denied.retry_after_seconds(int((BASE_TIME + 4) * 1000)) == 57
    assert reopened.allowed is True
    assert reopened.remaining == 0


def test_denied_sliding_requests_do_not_extend_the_window(store, clock):
    limiter = RateLimiter(store, clock=clock)
    config = _config(limit=1)

    async def run():
        first = await limiter.sliding_window(config)
        clock.advance(30)
        second = await limiter.sliding_window(config)
        clock.advance(30)
        third = await limiter.sliding_window(config)
        return first, second, third

    first, second, third = asyncio.run(run())

    assert first.allowed is True
    assert second.allowed is False
    assert second.reset_at_ms == int(BASE_TIME * 1000) + 60_000
    assert third.allowed is True


@pytest.mark.parametrize(
    ("algorithm", "expected_key"),
    [
        (RateLimitAlgorithm.SLIDING_WINDOW, "rl:sw:203.0.113.7:status"),
        (RateLimitAlgorithm.FIXED_WINDOW, f"rl:203.0.113.7:status:{int(BASE_TIME // 60)}"),
    ],
)
def test_check_rate_limit_dispatches_on_algorithm(store, clock, algorithm, expected_key):
    limiter = RateLimiter(store, clock=clock)

    async def run():
        await limiter.check_rate_limit(_config(), algorithm)
        return await store.exists(expected_key)

    assert asyncio.run(run()) is True


def test_keys_are_partitioned_by_identifier_and_endpoint():
    a = _config(identifier="a", endpoint_key="search")
    b = _config(identifier="b", endpoint_key="search")
    c = _config(identifier="a", endpoint_key="trending")

    assert len({sliding_window_key(x) for x in (a, b, c)}) == 3
    assert fixed_window_key(a, BASE_TIME) == fixed_window_key(a, BASE_TIME + 1)
    assert fixed_window_key(a, BASE_TIME) != fixed_window_key(a, BASE_TIME + 60)


@settings(max_examples=25, deadline=None)
@given(limit=st.integers(min_value=1, max_value=20), extra=st.integers(min_value=1, max_value=10))
def test_sliding_window_admits_exactly_limit_under_concurrency(limit: int, extra: int):
    """
    Property: limit + extra simultaneous checks on one key never admit more
    than ``limit`` requests, and admit exactly that many.
    """
    clock = FakeClock()
    limiter = RateLimiter(InMemoryCounterStore(clock), clock=clock)
    config = _config(limit=limit)

    async def run():
        return await asyncio.gather(
            *(limiter.sliding_window(config) for _ in range(limit + extra))
        )

    results = asyncio.run(run())

    assert sum(1 for r in results if r.allowed) == limit
    assert sorted(r.remaining for r in results if r.allowed) == list(range(limit))


@pytest.mark.parametrize("algorithm", list(RateLimitAlgorithm))
def test_store_errors_fail_open(failing_store, clock, algorithm):
    limiter = RateLimiter(failing_store, clock=clock)
    config = _config(limit=7)

    with capture_logs() as logs:
        result = asyncio.run(limiter.check_rate_limit(config, algorithm))

    assert result.allowed is True
    assert result.remaining == 7
    assert result.reset_at_ms == int(BASE_TIME * 1000) + 60_000
    failures = [entry for entry in logs if entry["event"] == "rate_limit.store_unavailable"]
    assert len(failures) == 1
    assert failures[0]["log_level"] == "error"
    assert failures[0]["algorithm"] == algorithm.value


@pytest.mark.parametrize("algorithm", list(RateLimitAlgorithm))
def test_store_timeouts_fail_open(slow_store, clock, algorithm):
    limiter = RateLimiter(slow_store, clock=clock, timeout_seconds=0.01)

    with capture_logs() as logs:
        result = asyncio.run(limiter.check_rate_limit(_config(), algorithm))

    assert result.allowed is True
    assert result.remaining == 3
    assert any(entry["event"] == "rate_limit.store_unavailable" for entry in logs)


def test_denials_are_logged(store, clock):
    limiter = RateLimiter(store, clock=clock)
    config = _config(limit=1)

    async def run():
        await limiter.fixed_window(config)
        await limiter.fixed_window(config)

    with capture_logs() as logs:
        asyncio.run(run())

    exceeded = [entry for entry in logs if entry["event"] == "rate_limit.exceeded"]
    assert len(exceeded) == 1
    assert exceeded[0]["count"] == 2
    assert exceeded[0]["identifier"] == "203.0.113.7"


@pytest.mark.parametrize(
    "overrides",
    [{"limit": 0}, {"limit": -1}, {"window_seconds": 0}, {"window_seconds": -60}],
)
def test_config_rejects_non_positive_bounds(overrides):
    with pytest.raises(ValueError):
        _config(**overrides)


@pytest.mark.parametrize(
    ("algorithm", "operation"),
    [
        (RateLimitAlgorithm.FIXED_WINDOW, "incr"),
        (RateLimitAlgorithm.SLIDING_WINDOW, "atomic_window_update"),
    ],
)
def test_unexpected_store_errors_fail_open(broken_store, clock, algorithm, operation):
    limiter = RateLimiter(broken_store, clock=clock)

    with capture_logs() as logs:
        result = asyncio.run(limiter.check_rate_limit(_config(limit=4), algorithm))

    assert result.allowed is True
    assert result.remaining == 4
    failures = [entry for entry in logs if entry["event"] == "rate_limit.store_unavailable"]
    assert [(f["log_level"], f["operation"]) for f in failures] == [("error", operation)]

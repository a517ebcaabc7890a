"""
Rate limiting against the shared counter store.

Two interchangeable algorithms:

- Fixed window: INCR + EXPIRE (first hit) + TTL on a per-bucket counter.
  Cheap, but a client can burst up to twice the limit across a bucket
  boundary because adjacent buckets are independent counters.
- Sliding window: a timestamp log pruned, counted and appended in a single
  atomic store transaction. One round trip and exact under concurrency.

Both fail open: when the store errors or times out the request is allowed
with the full quota reported as remaining.
"""
import time
import uuid
from typing import Callable, Optional

import structlog

from ..core.config import get_settings
from ..core.errors import BackingStoreUnavailable
from ..domain.rate_limits import RateLimitAlgorithm, RateLimitConfig, RateLimitResult
from ..repositories.counters import CounterStore, guarded_store_call

logger = structlog.get_logger()


def fixed_window_key(config: RateLimitConfig, now_seconds: float) -> str:
    bucket = int(now_seconds // config.window_seconds)
    return f"rl:{config.identifier}:{config.endpoint_key}:{bucket}"


def sliding_window_key(config: RateLimitConfig) -> str:
    return f"rl:sw:{config.identifier}:{config.endpoint_key}"


class RateLimiter:
    """Checks request quotas; holds no counts of its own."""

    def __init__(
        self,
        store: CounterStore,
        *,
        clock: Callable[[], float] = time.time,
        timeout_seconds: Optional[float] = None,
    ):
        self.store = store
        self.clock = clock
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else get_settings().store_timeout_seconds
        )

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    async def check_rate_limit(
        self,
        config: RateLimitConfig,
        algorithm: RateLimitAlgorithm = RateLimitAlgorithm.FIXED_WINDOW,
    ) -> RateLimitResult:
        if algorithm == RateLimitAlgorithm.SLIDING_WINDOW:
            return await self.sliding_window(config)
        return await self.fixed_window(config)

    async def fixed_window(self, config: RateLimitConfig) -> RateLimitResult:
        now = self.clock()
        key = fixed_window_key(config, now)

        try:
            count = await guarded_store_call(
                "incr", self.store.incr(key), timeout=self.timeout_seconds, key=key
            )
            if count == 1:
                await guarded_store_call(
                    "expire",
                    self.store.expire(key, config.window_seconds),
                    timeout=self.timeout_seconds,
                    key=key,
                )

            ttl = await guarded_store_call(
                "ttl", self.store.ttl(key), timeout=self.timeout_seconds, key=key
            )
            if ttl < 0:
                # Counter lost its expiry (an earlier EXPIRE failed); restore it.
                await guarded_store_call(
                    "expire",
                    self.store.expire(key, config.window_seconds),
                    timeout=self.timeout_seconds,
                    key=key,
                )
                ttl = config.window_seconds
        except BackingStoreUnavailable as exc:
            return self._fail_open(config, exc, algorithm=RateLimitAlgorithm.FIXED_WINDOW)

        reset_at_ms = int(now * 1000) + ttl * 1000

        if count > config.limit:
            logger.warning(
                "rate_limit.exceeded",
                algorithm=RateLimitAlgorithm.FIXED_WINDOW.value,
                identifier=config.identifier,
                endpoint=config.endpoint_key,
                count=count,
                limit=config.limit,
                window_seconds=config.window_seconds,
                reset_at_ms=reset_at_ms,
            )
            return RateLimitResult(allowed=False, remaining=0, reset_at_ms=reset_at_ms)

        return RateLimitResult(
            allowed=True,
            remaining=config.limit - count,
            reset_at_ms=reset_at_ms,
        )

    async def sliding_window(self, config: RateLimitConfig) -> RateLimitResult:
        now_ms = self._now_ms()
        key = sliding_window_key(config)
        entry_id = f"{now_ms}-{uuid.uuid4().hex}"

        try:
            update = await guarded_store_call(
                "atomic_window_update",
                self.store.execute_atomic_window_update(
                    key,
                    now_ms,
                    config.window_seconds * 1000,
                    config.limit,
                    entry_id,
                ),
                timeout=self.timeout_seconds,
                key=key,
            )
        except BackingStoreUnavailable as exc:
            return self._fail_open(config, exc, algorithm=RateLimitAlgorithm.SLIDING_WINDOW)

        if not update.allowed:
            logger.warning(
                "rate_limit.exceeded",
                algorithm=RateLimitAlgorithm.SLIDING_WINDOW.value,
                identifier=config.identifier,
                endpoint=config.endpoint_key,
                limit=config.limit,
                window_seconds=config.window_seconds,
                reset_at_ms=update.reset_at_ms,
            )

        return RateLimitResult(
            allowed=update.allowed,
            remaining=update.remaining,
            reset_at_ms=update.reset_at_ms,
        )

    def _fail_open(
        self,
        config: RateLimitConfig,
        exc: BackingStoreUnavailable,
        *,
        algorithm: RateLimitAlgorithm,
    ) -> RateLimitResult:
        logger.error(
            "rate_limit.store_unavailable",
            algorithm=algorithm.value,
            identifier=config.identifier,
            endpoint=config.endpoint_key,
            operation=exc.operation,
            key=exc.key,
            error=str(exc.__cause__ or exc),
        )
        return RateLimitResult(
            allowed=True,
            remaining=config.limit,
            reset_at_ms=self._now_ms() + config.window_seconds * 1000,
        )

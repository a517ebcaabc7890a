"""
Behavior anomaly detection.

Two heuristics layered on the counter store:

- High frequency: too many requests to one endpoint inside a long window
  (default 50 per hour). Catches sustained single-endpoint abuse that stays
  under the short-burst rate limit.
- Scanning: too many distinct endpoints inside a short window (default 20
  per minute). Cardinality of the visited set is the signal, so hammering a
  single endpoint never trips it.

Each heuristic costs extra store round trips per request, which is why the
admission pipeline only runs this detector on routes that opt in.
"""
import asyncio
from typing import Optional

import structlog

from ..core.config import get_settings
from ..core.errors import BackingStoreUnavailable
from ..domain.behavior import BehaviorKind, BehaviorResult
from ..repositories.counters import CounterStore, guarded_store_call

logger = structlog.get_logger()


def high_frequency_key(identifier: str, endpoint_key: str) -> str:
    return f"hf:{identifier}:{endpoint_key}"


def scanning_key(identifier: str) -> str:
    return f"scan:{identifier}"


class BehaviorAnomalyDetector:
    def __init__(
        self,
        store: CounterStore,
        *,
        high_frequency_threshold: Optional[int] = None,
        high_frequency_window: Optional[int] = None,
        scanning_threshold: Optional[int] = None,
        scanning_window: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.store = store
        self.high_frequency_threshold = (
            high_frequency_threshold
            if high_frequency_threshold is not None
            else settings.high_frequency_threshold
        )
        self.high_frequency_window = (
            high_frequency_window
            if high_frequency_window is not None
            else settings.high_frequency_window_seconds
        )
        self.scanning_threshold = (
            scanning_threshold if scanning_threshold is not None else settings.scanning_threshold
        )
        self.scanning_window = (
            scanning_window if scanning_window is not None else settings.scanning_window_seconds
        )
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else settings.store_timeout_seconds
        )

    async def detect_high_frequency(
        self, identifier: str, endpoint_key: str
    ) -> BehaviorResult:
        """Count requests per identifier and endpoint over the long window."""
        key = high_frequency_key(identifier, endpoint_key)
        threshold = self.high_frequency_threshold
        window = self.high_frequency_window

        try:
            count = await guarded_store_call(
                "incr", self.store.incr(key), timeout=self.timeout_seconds, key=key
            )
            if count == 1:
                await guarded_store_call(
                    "expire",
                    self.store.expire(key, window),
                    timeout=self.timeout_seconds,
                    key=key,
                )
        except BackingStoreUnavailable as exc:
            self._log_failure("high_frequency", identifier, endpoint_key, exc)
            return BehaviorResult.normal()

        if count > threshold:
            logger.warning(
                "behavior.high_frequency",
                identifier=identifier,
                endpoint=endpoint_key,
                count=count,
                threshold=threshold,
                window_seconds=window,
            )
            return BehaviorResult(
                is_abnormal=True,
                kind=BehaviorKind.HIGH_FREQUENCY,
                count=count,
                threshold=threshold,
                details=f"{count} requests / {window}s (threshold: {threshold})",
            )

        return BehaviorResult.normal(count=count, threshold=threshold)

    async def detect_scanning(self, identifier: str, endpoint_key: str) -> BehaviorResult:
        """Track the distinct endpoints an identifier touched in the short window."""
        key = scanning_key(identifier)
        threshold = self.scanning_threshold
        window = self.scanning_window

        try:
            await guarded_store_call(
                "sadd",
                self.store.sadd(key, endpoint_key),
                timeout=self.timeout_seconds,
                key=key,
            )
            await guarded_store_call(
                "expire",
                self.store.expire(key, window),
                timeout=self.timeout_seconds,
                key=key,
            )
            unique_endpoints = await guarded_store_call(
                "scard", self.store.scard(key), timeout=self.timeout_seconds, key=key
            )
        except BackingStoreUnavailable as exc:
            self._log_failure("scanning", identifier, endpoint_key, exc)
            return BehaviorResult.normal()

        if unique_endpoints > threshold:
            logger.warning(
                "behavior.scanning",
                identifier=identifier,
                unique_endpoints=unique_endpoints,
                threshold=threshold,
                window_seconds=window,
                latest_endpoint=endpoint_key,
            )
            return BehaviorResult(
                is_abnormal=True,
                kind=BehaviorKind.SCANNING,
                count=unique_endpoints,
                threshold=threshold,
                details=(
                    f"{unique_endpoints} distinct endpoints / {window}s "
                    f"(threshold: {threshold})"
                ),
            )

        return BehaviorResult.normal(count=unique_endpoints, threshold=threshold)

    async def detect_abnormal_behavior(
        self, identifier: str, endpoint_key: str
    ) -> BehaviorResult:
        """Run both heuristics concurrently; the first abnormal result wins."""
        high_frequency, scanning = await asyncio.gather(
            self.detect_high_frequency(identifier, endpoint_key),
            self.detect_scanning(identifier, endpoint_key),
        )

        if high_frequency.is_abnormal:
            return high_frequency
        if scanning.is_abnormal:
            return scanning
        return BehaviorResult.normal()

    def _log_failure(
        self,
        heuristic: str,
        identifier: str,
        endpoint_key: str,
        exc: BackingStoreUnavailable,
    ) -> None:
        logger.error(
            "behavior.store_unavailable",
            heuristic=heuristic,
            identifier=identifier,
            endpoint=endpoint_key,
            operation=exc.operation,
            key=exc.key,
            error=str(exc.__cause__ or exc),
        )

"""Admission pipeline composing classification, rate limiting and behavior checks."""

from __future__ import annotations

import functools
from typing import Any, Awaitable, Callable, Mapping, MutableMapping

import structlog

from ..core.config import get_settings
from ..core.errors import (
    AnomalousBehavior,
    BlacklistedClient,
    RateLimited,
    rejection_for_classification,
)
from ..domain.admission import AdmissionDecision, AdmissionOptions
from ..domain.behavior import BehaviorKind
from ..domain.bot_detection import Classification
from ..repositories.counters import guarded_store_call
from ..services.background import BackgroundTaskRunner
from ..services.behavior import BehaviorAnomalyDetector
from ..services.blacklist import IPBlacklist
from ..services.rate_limiter import RateLimiter
from ..services.user_agent import classify, get_client_identifier, get_user_agent
from ..telemetry import record_decision, tracer

logger = structlog.get_logger()

Handler = Callable[..., Awaitable[Any]]


def violation_key(identifier: str) -> str:
    return f"bot:ip:{identifier}"


def set_rate_limit_headers(
    response: Any,
    remaining: int,
    reset_at_ms: int,
    limit: int | None = None,
) -> Any:
    """Expose quota information so well-behaved clients can back off."""

    headers: MutableMapping[str, str] = response.headers
    if limit is not None:
        headers["X-RateLimit-Limit"] = str(limit)
    headers["X-RateLimit-Remaining"] = str(remaining)
    headers["X-RateLimit-Reset"] = str(reset_at_ms // 1000)
    return response


class AdmissionMiddleware:
    """Runs the ordered admission stages for one route call.

    Stages: identifier and user agent extraction, classification (may reject
    before any store access), optional blacklist lookup, rate limit, optional
    behavior check. Holds no per-request state between calls.
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        behavior_detector: BehaviorAnomalyDetector | None = None,
        *,
        blacklist: IPBlacklist | None = None,
        background: BackgroundTaskRunner | None = None,
        classifier: Callable[[str | None], Classification] = classify,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.behavior_detector = behavior_detector
        self.blacklist = blacklist
        self.background = background
        self.classifier = classifier

    def _now_ms(self) -> int:
        return int(self.rate_limiter.clock() * 1000)

    async def admit(
        self,
        headers: Mapping[str, str],
        endpoint_key: str,
        options: AdmissionOptions,
    ) -> AdmissionDecision:
        """Return the decision for an admitted request or raise a typed rejection."""

        with tracer.start_as_current_span("admission.check") as span:
            identifier = get_client_identifier(headers)
            user_agent = get_user_agent(headers)
            span.set_attribute("admission.endpoint", endpoint_key)

            classification = self._classify(identifier, user_agent, endpoint_key)
            decision = AdmissionDecision(identifier=identifier, classification=classification)

            if options.enable_blacklist and self.blacklist is not None:
                if await self.blacklist.is_blacklisted(identifier):
                    record_decision("blacklist", "blocked")
                    logger.warning(
                        "admission.blacklisted",
                        identifier=identifier,
                        endpoint=endpoint_key,
                    )
                    raise BlacklistedClient("Client address is blacklisted")

            if options.enable_rate_limit:
                policy = options.policy
                result = await self.rate_limiter.check_rate_limit(
                    policy.for_client(identifier, endpoint_key),
                    policy.algorithm,
                )
                if not result.allowed:
                    record_decision("rate_limit", "throttled")
                    self._record_violation(identifier, "rate_limited")
                    span.set_attribute("admission.outcome", "rate_limited")
                    raise RateLimited(
                        "Too many requests, please retry later",
                        retry_after_seconds=result.retry_after_seconds(self._now_ms()),
                        reset_at_ms=result.reset_at_ms,
                    )
                decision.rate_limit = result
                decision.limit = policy.limit

            if options.enable_behavior_detection and self.behavior_detector is not None:
                behavior = await self.behavior_detector.detect_abnormal_behavior(
                    identifier, endpoint_key
                )
                if behavior.is_abnormal:
                    record_decision("behavior", "throttled")
                    self._record_violation(identifier, behavior.kind.value)
                    span.set_attribute("admission.outcome", behavior.kind.value)
                    window = self._behavior_window(behavior.kind)
                    raise AnomalousBehavior(
                        f"Abnormal behavior detected: {behavior.kind.value} ({behavior.details})",
                        retry_after_seconds=window,
                        reset_at_ms=self._now_ms() + window * 1000,
                    )

            record_decision("pipeline", "admitted")
            span.set_attribute("admission.outcome", "admitted")
            return decision

    def wrap(
        self,
        handler: Handler,
        endpoint_key: str,
        options: AdmissionOptions,
    ) -> Handler:
        """Guard ``handler(request, ...)`` with the admission pipeline."""

        @functools.wraps(handler)
        async def wrapped(request: Any, *args: Any, **kwargs: Any) -> Any:
            decision = await self.admit(request.headers, endpoint_key, options)
            response = await handler(request, *args, **kwargs)
            if options.annotate_response and decision.rate_limit is not None:
                set_rate_limit_headers(
                    response,
                    decision.rate_limit.remaining,
                    decision.rate_limit.reset_at_ms,
                    limit=decision.limit,
                )
            return response

        return wrapped

    def _classify(
        self, identifier: str, user_agent: str | None, endpoint_key: str
    ) -> Classification:
        classification = self.classifier(user_agent)

        if classification.should_block:
            record_decision("classification", "blocked")
            logger.warning(
                "bot_detection.blocked",
                identifier=identifier,
                user_agent=user_agent,
                reason=classification.reason,
                confidence=classification.confidence.value,
                endpoint=endpoint_key,
            )
            raise rejection_for_classification(classification.reason)

        if classification.is_bot:
            logger.info(
                "bot_detection.crawler_allowed",
                identifier=identifier,
                user_agent=user_agent,
                reason=classification.reason,
                endpoint=endpoint_key,
            )
        return classification

    def _behavior_window(self, kind: BehaviorKind) -> int:
        detector = self.behavior_detector
        if kind == BehaviorKind.HIGH_FREQUENCY:
            return detector.high_frequency_window
        return detector.scanning_window

    def _record_violation(self, identifier: str, kind: str) -> None:
        """Bump the per-client violation counter without waiting for it.

        Feeds manual blacklist review only; the decision never depends on it.
        """
        if self.background is None:
            return
        self.background.spawn(
            self._bump_violation_counter(identifier),
            name=f"admission.violation:{kind}",
        )

    async def _bump_violation_counter(self, identifier: str) -> None:
        store = self.rate_limiter.store
        timeout = self.rate_limiter.timeout_seconds
        key = violation_key(identifier)
        count = await guarded_store_call("incr", store.incr(key), timeout=timeout, key=key)
        if count == 1:
            await guarded_store_call(
                "expire",
                store.expire(key, get_settings().violation_ttl_seconds),
                timeout=timeout,
                key=key,
            )

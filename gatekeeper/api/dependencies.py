from __future__ import annotations

from collections.abc import Awaitable, Callable

from fastapi import Depends, Request, Response

from ..core.config import get_settings
from ..domain.admission import AdmissionDecision, AdmissionOptions
from ..repositories.counters import CounterStore, RedisCounterStore
from ..services.background import BackgroundTaskRunner
from ..services.behavior import BehaviorAnomalyDetector
from ..services.blacklist import IPBlacklist
from ..services.policies import get_rate_limit_policy
from ..services.rate_limiter import RateLimiter
from .admission import AdmissionMiddleware, set_rate_limit_headers

_counter_store: CounterStore | None = None
_background_tasks = BackgroundTaskRunner()


async def get_counter_store() -> CounterStore:
    """Process wide store client, created on first use."""

    global _counter_store
    if _counter_store is None:
        settings = get_settings()
        _counter_store = RedisCounterStore.from_url(
            settings.redis_url,
            socket_timeout=settings.redis_socket_timeout_seconds,
        )
    return _counter_store


async def get_background_tasks() -> BackgroundTaskRunner:
    return _background_tasks


async def get_admission_middleware(
    store: CounterStore = Depends(get_counter_store),
    background: BackgroundTaskRunner = Depends(get_background_tasks),
) -> AdmissionMiddleware:
    return AdmissionMiddleware(
        RateLimiter(store),
        BehaviorAnomalyDetector(store),
        blacklist=IPBlacklist(store),
        background=background,
    )


async def shutdown_dependencies() -> None:
    global _counter_store
    await _background_tasks.drain()
    if isinstance(_counter_store, RedisCounterStore):
        await _counter_store.close()
    _counter_store = None


def enforce_admission(
    endpoint_key: str,
    options: AdmissionOptions | None = None,
) -> Callable[..., Awaitable[AdmissionDecision]]:
    """Dependency factory that runs the admission pipeline for a route.

    Without explicit ``options`` the policy table entry for the endpoint and
    request method is used.
    """

    async def dependency(
        request: Request,
        response: Response,
        admission: AdmissionMiddleware = Depends(get_admission_middleware),
    ) -> AdmissionDecision:
        effective = options or AdmissionOptions(
            policy=get_rate_limit_policy(endpoint_key, request.method)
        )
        decision = await admission.admit(request.headers, endpoint_key, effective)
        if effective.annotate_response and decision.rate_limit is not None:
            set_rate_limit_headers(
                response,
                decision.rate_limit.remaining,
                decision.rate_limit.reset_at_ms,
                limit=decision.limit,
            )
        return decision

    return dependency

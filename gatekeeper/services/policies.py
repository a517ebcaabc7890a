"""
Per-endpoint rate limit policies.

Algorithm choice follows the endpoint's risk:

- Low risk reads (public queries, no side effects) use the fixed window,
  which needs fewer store commands.
- Writes, auth flows and sensitive reads use the sliding window for exact
  limits.

Keys are either ``"<endpoint>"`` or ``"<endpoint>:<METHOD>"``; the method
specific entry wins.
"""
from typing import Dict, List, Optional

from ..core.config import get_settings
from ..domain.rate_limits import RateLimitAlgorithm, RateLimitPolicy

FIXED = RateLimitAlgorithm.FIXED_WINDOW
SLIDING = RateLimitAlgorithm.SLIDING_WINDOW

DEFAULT_RATE_LIMITS: Dict[str, RateLimitPolicy] = {
    "GLOBAL": RateLimitPolicy(limit=40, window_seconds=3600),
    "PUBLIC_API": RateLimitPolicy(limit=30, window_seconds=3600),
    "TRENDING": RateLimitPolicy(limit=20, window_seconds=3600),
    "SEARCH": RateLimitPolicy(limit=30, window_seconds=3600),
    "AUTHENTICATED": RateLimitPolicy(limit=100, window_seconds=3600),
}

RATE_LIMIT_POLICIES: Dict[str, RateLimitPolicy] = {
    # Public queries
    "/api/market/trending": RateLimitPolicy(
        algorithm=FIXED,
        limit=20,
        window_seconds=3600,
        reason="Public trending list, read only",
    ),
    "/api/system/status": RateLimitPolicy(
        algorithm=FIXED,
        limit=40,
        window_seconds=3600,
        reason="Public status endpoint, read only",
    ),
    # Authenticated queries
    "/api/auth/me": RateLimitPolicy(
        algorithm=FIXED,
        limit=100,
        window_seconds=3600,
        reason="Profile lookup, cached client side",
    ),
    "/api/market/search": RateLimitPolicy(
        algorithm=FIXED,
        limit=30,
        window_seconds=3600,
        reason="Authenticated search backed by a cache",
    ),
    "/api/listings:GET": RateLimitPolicy(
        algorithm=FIXED,
        limit=100,
        window_seconds=3600,
        reason="Users reading their own listings",
    ),
    # Writes
    "/api/listings:POST": RateLimitPolicy(
        algorithm=SLIDING,
        limit=100,
        window_seconds=3600,
        reason="Listing creation needs exact limits against abuse",
    ),
    "/api/listings:PUT": RateLimitPolicy(
        algorithm=SLIDING,
        limit=100,
        window_seconds=3600,
        reason="Listing updates",
    ),
    "/api/listings:DELETE": RateLimitPolicy(
        algorithm=SLIDING,
        limit=100,
        window_seconds=3600,
        reason="Listing deletion",
    ),
    "/api/interests:POST": RateLimitPolicy(
        algorithm=SLIDING,
        limit=100,
        window_seconds=3600,
        reason="Interest requests, guards against harassment",
    ),
    # Auth flows
    "/api/auth/discord": RateLimitPolicy(
        algorithm=SLIDING,
        limit=5,
        window_seconds=60,
        reason="OAuth start, prevents state token abuse",
    ),
    "/api/auth/discord/callback": RateLimitPolicy(
        algorithm=SLIDING,
        limit=10,
        window_seconds=60,
        reason="OAuth callback, prevents replay",
    ),
    # Sensitive reads
    "/api/listings/[id]/contact": RateLimitPolicy(
        algorithm=SLIDING,
        limit=20,
        window_seconds=3600,
        reason="Contact details are sensitive",
    ),
}


def get_rate_limit_policy(endpoint: str, method: Optional[str] = None) -> RateLimitPolicy:
    if method:
        policy = RATE_LIMIT_POLICIES.get(f"{endpoint}:{method.upper()}")
        if policy is not None:
            return policy

    policy = RATE_LIMIT_POLICIES.get(endpoint)
    if policy is not None:
        return policy

    settings = get_settings()
    return RateLimitPolicy(
        algorithm=FIXED,
        limit=settings.default_rate_limit,
        window_seconds=settings.default_rate_limit_window_seconds,
        reason="Default policy for endpoints without an explicit entry",
    )


def sliding_window_endpoints() -> List[str]:
    return [key for key, policy in RATE_LIMIT_POLICIES.items() if policy.algorithm == SLIDING]


def fixed_window_endpoints() -> List[str]:
    return [key for key, policy in RATE_LIMIT_POLICIES.items() if policy.algorithm == FIXED]

"""Domain models describing API rate limiting state."""

from __future__ import annotations

import math
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class RateLimitAlgorithm(str, Enum):
    FIXED_WINDOW = "fixed_window"
    SLIDING_WINDOW = "sliding_window"


class RateLimitConfig(BaseModel):
    """Immutable per-request rate limit parameters."""

    model_config = ConfigDict(frozen=True)

    limit: int = Field(gt=0, description="Maximum number of requests per window")
    window_seconds: int = Field(gt=0, description="Window length in seconds")
    identifier: str = Field(description="Partition key, usually the client IP")
    endpoint_key: str = Field(description="Stable name of the protected route")


class RateLimitResult(BaseModel):
    """Represents the outcome of a rate limit check."""

    allowed: bool = Field(
        description="Whether the request is permitted under the configured quota",
    )
    remaining: int = Field(
        description="Number of requests still available before hitting the limit",
        ge=0,
    )
    reset_at_ms: int = Field(
        description="Epoch milliseconds at which the quota frees up again",
        ge=0,
    )

    def retry_after_seconds(self, now_ms: int) -> int:
        return max(math.ceil((self.reset_at_ms - now_ms) / 1000), 0)


class WindowUpdate(BaseModel):
    """Result of one atomic sliding window transaction at the store."""

    allowed: bool
    remaining: int = Field(ge=0)
    reset_at_ms: int = Field(ge=0)


class RateLimitPolicy(BaseModel):
    """Route level rate limit settings, independent of the calling client."""

    model_config = ConfigDict(frozen=True)

    algorithm: RateLimitAlgorithm = RateLimitAlgorithm.FIXED_WINDOW
    limit: int = Field(gt=0)
    window_seconds: int = Field(gt=0)
    reason: str | None = Field(
        default=None,
        description="Why this algorithm was chosen, kept for documentation and tuning",
    )

    def for_client(self, identifier: str, endpoint_key: str) -> RateLimitConfig:
        return RateLimitConfig(
            limit=self.limit,
            window_seconds=self.window_seconds,
            identifier=identifier,
            endpoint_key=endpoint_key,
        )

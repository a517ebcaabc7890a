"""Domain models exchanged by the admission pipeline and its HTTP boundary."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from .bot_detection import Classification
from .rate_limits import RateLimitPolicy, RateLimitResult


class AdmissionOptions(BaseModel):
    """Per-route switches for the admission pipeline."""

    model_config = ConfigDict(frozen=True)

    policy: RateLimitPolicy
    enable_rate_limit: bool = True
    enable_behavior_detection: bool = Field(
        default=False,
        description="Adds two store round trips per request; reserve for high risk routes",
    )
    enable_blacklist: bool = False
    annotate_response: bool = True


class AdmissionDecision(BaseModel):
    """Details of a request that passed every enabled stage."""

    identifier: str
    classification: Classification
    rate_limit: RateLimitResult | None = None
    limit: int | None = None


class AdmissionRejection(BaseModel):
    """Structured error payload returned when a request is refused."""

    kind: str = Field(description="Machine readable rejection kind")
    retry_after_seconds: int | None = Field(
        default=None,
        description="Seconds until clients should retry; absent for outright blocks",
        ge=0,
    )
    reset_at_ms: int | None = Field(
        default=None,
        description="Epoch milliseconds at which the violated quota resets",
        ge=0,
    )
    reason: str = Field(description="Human readable explanation")

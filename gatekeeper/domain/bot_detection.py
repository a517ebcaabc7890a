"""Domain models describing user agent classification."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Classification(BaseModel):
    """Verdict produced for a single user agent string."""

    model_config = ConfigDict(frozen=True)

    is_bot: bool = Field(description="Whether the caller looks like automated traffic")
    should_block: bool = Field(
        description="Whether the request must be rejected before reaching the store",
    )
    confidence: Confidence
    reason: str | None = Field(
        default=None,
        description="Matched rule, e.g. 'blacklist:curl' or 'seo_crawler:googlebot'",
    )

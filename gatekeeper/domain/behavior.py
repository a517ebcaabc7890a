"""Domain models for behavior anomaly detection."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class BehaviorKind(str, Enum):
    HIGH_FREQUENCY = "high_frequency"
    SCANNING = "scanning"
    NONE = "none"


class BehaviorResult(BaseModel):
    """Outcome of one heuristic, or of the combined detector."""

    is_abnormal: bool = False
    kind: BehaviorKind = BehaviorKind.NONE
    count: int = Field(default=0, ge=0)
    threshold: int = Field(default=0, ge=0)
    details: str | None = None

    @classmethod
    def normal(cls, *, count: int = 0, threshold: int = 0) -> "BehaviorResult":
        return cls(count=count, threshold=threshold)

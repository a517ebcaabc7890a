"""Typed rejections raised by the admission pipeline."""

from __future__ import annotations

from ..domain.admission import AdmissionRejection


class AdmissionError(Exception):
    """Base class for every refusal the pipeline surfaces to its caller."""

    kind: str = "admission_error"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    def to_payload(self) -> AdmissionRejection:
        return AdmissionRejection(kind=self.kind, reason=self.reason)


class AdmissionBlocked(AdmissionError):
    """Forbidden-equivalent refusal decided without consulting the store."""


class MissingIdentity(AdmissionBlocked):
    kind = "missing_identity"


class BlocklistedAgent(AdmissionBlocked):
    kind = "blocklisted_agent"


class UnrecognizedAgent(AdmissionBlocked):
    kind = "unrecognized_agent"


class BlacklistedClient(AdmissionBlocked):
    kind = "blacklisted_client"


class AdmissionThrottled(AdmissionError):
    """Throttled-equivalent refusal confirmed by the counter store."""

    def __init__(
        self,
        reason: str,
        *,
        retry_after_seconds: int,
        reset_at_ms: int | None = None,
    ) -> None:
        super().__init__(reason)
        self.retry_after_seconds = max(retry_after_seconds, 0)
        self.reset_at_ms = reset_at_ms

    def to_payload(self) -> AdmissionRejection:
        return AdmissionRejection(
            kind=self.kind,
            reason=self.reason,
            retry_after_seconds=self.retry_after_seconds,
            reset_at_ms=self.reset_at_ms,
        )


class RateLimited(AdmissionThrottled):
    kind = "rate_limited"


class AnomalousBehavior(AdmissionThrottled):
    kind = "anomalous_behavior"


class BackingStoreUnavailable(RuntimeError):
    """Raised when the shared counter store fails or times out.

    Never leaves the pipeline: every call site converts it into its
    fail-open result.
    """

    def __init__(self, operation: str, key: str | None = None) -> None:
        message = f"Counter store operation '{operation}' failed"
        if key:
            message = f"{message} for key '{key}'"
        super().__init__(message)
        self.operation = operation
        self.key = key


def rejection_for_classification(reason: str | None) -> AdmissionBlocked:
    """Map a blocking classification reason onto its typed rejection."""

    if reason == "missing_user_agent":
        return MissingIdentity("User-Agent header is required")
    if reason and reason.startswith("blacklist:"):
        return BlocklistedAgent(f"Automated client detected ({reason})")
    return UnrecognizedAgent(f"Unrecognized client ({reason or 'unknown'})")

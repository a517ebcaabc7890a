"""Administrator managed IP blacklist stored alongside the counters."""

from __future__ import annotations

from typing import Optional

import structlog

from ..core.config import get_settings
from ..core.errors import BackingStoreUnavailable
from ..repositories.counters import CounterStore, guarded_store_call

logger = structlog.get_logger()


def blacklist_key(ip: str) -> str:
    return f"blacklist:ip:{ip}"


class IPBlacklist:
    """Explicit blocks with their own administrator-chosen lifetime."""

    def __init__(self, store: CounterStore, *, timeout_seconds: Optional[float] = None):
        self.store = store
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else get_settings().store_timeout_seconds
        )

    async def is_blacklisted(self, ip: str) -> bool:
        """Request path lookup; an unreachable store means "not blacklisted"."""

        key = blacklist_key(ip)
        try:
            return await guarded_store_call(
                "exists", self.store.exists(key), timeout=self.timeout_seconds, key=key
            )
        except BackingStoreUnavailable as exc:
            logger.error(
                "blacklist.store_unavailable",
                identifier=ip,
                operation=exc.operation,
                error=str(exc.__cause__ or exc),
            )
            return False

    async def add(self, ip: str, duration_seconds: Optional[int] = None) -> None:
        duration = duration_seconds or get_settings().blacklist_default_ttl_seconds
        key = blacklist_key(ip)
        await guarded_store_call(
            "setex",
            self.store.setex(key, duration, "1"),
            timeout=self.timeout_seconds,
            key=key,
        )
        logger.info("blacklist.added", identifier=ip, duration_seconds=duration)

    async def remove(self, ip: str) -> bool:
        key = blacklist_key(ip)
        removed = await guarded_store_call(
            "delete", self.store.delete(key), timeout=self.timeout_seconds, key=key
        )
        logger.info("blacklist.removed", identifier=ip, existed=bool(removed))
        return bool(removed)

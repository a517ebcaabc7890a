"""Detached best-effort work that runs beside the admission decision."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Set

import structlog

logger = structlog.get_logger()


class BackgroundTaskRunner:
    """Fire-and-forget task launcher.

    Spawned coroutines never block the request that started them and their
    outcome never changes an admission decision. Failures are logged here.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "background.task_failed",
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight task; used on shutdown and in tests."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

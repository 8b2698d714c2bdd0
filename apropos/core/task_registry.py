"""Tracking for the daemon's long-running background tasks.

The activity detector loop and other fire-and-forget coroutines are spawned here so
shutdown can cancel them and failures are logged instead of lost.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Coroutine, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskRegistry:
    """Set of live background tasks with logged failures and bounded shutdown."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[object]] = set()

    def _on_task_done(self, task: asyncio.Task[object]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)

    def spawn(self, coro: Coroutine[object, object, T], name: str | None = None) -> asyncio.Task[T]:
        """Start a tracked task.

        Args:
            coro: Coroutine to run in the background
            name: Task name shown in logs

        Returns:
            The tracked asyncio.Task
        """
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        logger.debug("Spawned task %s (total: %d)", task.get_name(), len(self._tasks))
        return task

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Cancel every tracked task and wait up to `timeout` seconds for them to finish."""
        if not self._tasks:
            return

        tasks = list(self._tasks)
        logger.info("Cancelling %d background tasks", len(tasks))
        for task in tasks:
            task.cancel()

        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            logger.warning("Task %s still running %.1fs after cancel", task.get_name(), timeout)

    def task_count(self) -> int:
        return len(self._tasks)

"""Tracked background tasks whose outcome is always observed."""

import asyncio
import logging
from typing import Any, Coroutine, Optional

logger = logging.getLogger("linecord.tasks")


class BackgroundTasks:
    """Registry of fire-and-forget tasks.

    Every task gets a done-callback that reads its result exactly once, so
    a failing task is logged instead of surfacing as "Task exception was
    never retrieved". Running tasks are kept referenced until they finish.
    """

    def __init__(self, name: str = "linecord"):
        self._name = name
        self._active: set[asyncio.Task] = set()
        self.completed = 0
        self.failed = 0

    def spawn(self, coro: Coroutine[Any, Any, Any], label: str = "task") -> Optional[asyncio.Task]:
        """Schedule a coroutine on the running loop.

        Returns:
            The task, or None when no event loop is running (the coroutine
            is closed and a warning logged).
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning(f"[{self._name}] No running loop, dropped background {label}")
            return None

        task = loop.create_task(coro, name=f"{self._name}:{label}")
        self._active.add(task)
        task.add_done_callback(self._observe)
        return task

    def _observe(self, task: asyncio.Task) -> None:
        self._active.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failed += 1
            logger.error(f"[{self._name}] Background {task.get_name()} failed: {exc}", exc_info=exc)
        else:
            self.completed += 1

    @property
    def active(self) -> int:
        return len(self._active)

    async def wait_idle(self) -> None:
        """Wait for every currently running task to finish."""
        while self._active:
            await asyncio.gather(*list(self._active), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._active)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

from __future__ import annotations

import asyncio
from typing import Any, Callable, Coroutine, Optional, Set

from sessiongate.logging import get_logger

logger = get_logger(__name__)


class BackgroundTasks:
    """Owner of fire-and-forget side effects (activity bumps, audit writes).

    Failures are reported through ``on_error`` and counted in ``failures``;
    they never reach the request that scheduled the task.
    """

    def __init__(
        self, on_error: Optional[Callable[[str, BaseException], None]] = None
    ) -> None:
        self._tasks: Set[asyncio.Task] = set()
        self._on_error = on_error
        self.failures = 0

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("background_task_no_loop", task=name)
            return None
        task = loop.create_task(coro, name=name)
        # Strong reference until completion so the task is not garbage collected
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        self.failures += 1
        logger.warning(
            "background_task_failed",
            task=task.get_name(),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        if self._on_error:
            self._on_error(task.get_name(), exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every scheduled task; used at shutdown and in tests."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

"""Utilities for managing background tasks."""

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Fire-and-forget tasks owned by the application.

    Exceptions in a task are logged instead of silently lost, and every task
    still running at shutdown is cancelled.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def create(self, coro: Coroutine[Any, Any, Any], task_name: str = "background_task") -> asyncio.Task:
        async def _wrapped_task():
            try:
                await coro
            except asyncio.CancelledError:
                logger.info(f"Background task '{task_name}' cancelled")
                raise
            except Exception as e:
                logger.exception(f"Error in background task '{task_name}': {e}")

        task = asyncio.create_task(_wrapped_task(), name=task_name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

"""Task tracking service for the controller manager.

Reconcile tasks are tracked so the manager can wait for them to finish and
cancel them on shutdown. An optional limit bounds how many tracked tasks run
their coroutine at the same time.
"""

import asyncio
from abc import ABC, abstractmethod
import logging
from typing import Any, Coroutine, Set

_LOGGER = logging.getLogger(__name__)

__all__: list[str] = []


class TaskService(ABC):
    """Service for tracking and waiting for asynchronous tasks."""

    @abstractmethod
    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new task subject to the concurrency limit."""

    @abstractmethod
    async def block_till_done(self) -> None:
        """Wait for all active tasks to complete."""

    @abstractmethod
    async def cancel_all(self) -> None:
        """Cancel every tracked task and wait for them to finish."""


class TaskServiceImpl(TaskService):
    """Service for tracking and waiting for asynchronous tasks."""

    def __init__(self, max_concurrent: int | None = None) -> None:
        """Initialize the task service.

        Args:
            max_concurrent: Maximum number of tasks running at once,
                unbounded when None.
        """
        if max_concurrent is not None and max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._active_tasks: Set[asyncio.Task[Any]] = set()
        self._semaphore = (
            asyncio.Semaphore(max_concurrent) if max_concurrent is not None else None
        )

    async def _bounded(self, coro: Coroutine[None, None, Any]) -> Any:
        if self._semaphore is None:
            return await coro
        try:
            async with self._semaphore:
                return await coro
        finally:
            coro.close()

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(self._bounded(coro), name=name)
        self._active_tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        try:
            # This will raise any exception that occurred in the task
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            _LOGGER.error("Task %s failed: %s", task.get_name(), e)
        finally:
            self._active_tasks.discard(task)

    async def block_till_done(self) -> None:
        """Wait for all active tasks to complete.

        Tasks created while waiting are waited on as well.
        """
        while active_tasks := list(self._active_tasks):
            _LOGGER.debug("Waiting for %d tasks to complete", len(active_tasks))
            await asyncio.gather(*active_tasks, return_exceptions=True)
        await asyncio.sleep(0)

    async def cancel_all(self) -> None:
        tasks = list(self._active_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            _LOGGER.debug("Cancelled %d tasks", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

"""Named, cancellable background tasks.

Every timer-driven behavior (reconnect backoff, polling, hydration retries,
animations, countdowns, fire-and-forget commands) runs as an asyncio task
owned by the component that created it. Owners cancel their tasks when the
ride session ends or the engine stops, so no periodic work survives acting
on a stale booking id.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any


class TaskOwner:
    """Tracks background tasks by name; at most one live task per name."""

    def __init__(self, owner: str, *, logger: logging.Logger | None = None) -> None:
        self._owner = owner
        self._logger = logger or logging.getLogger(__name__)
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any], *, replace: bool = True) -> asyncio.Task[Any]:
        """Schedule *coro* under *name*.

        With ``replace=True`` an existing task of the same name is cancelled
        first; with ``replace=False`` the existing live task is returned and
        *coro* is closed without running.
        """
        existing = self._tasks.get(name)
        if existing is not None and not existing.done():
            if not replace:
                coro.close()
                return existing
            existing.cancel()

        task = asyncio.get_running_loop().create_task(coro, name=f"{self._owner}:{name}")
        self._tasks[name] = task
        task.add_done_callback(lambda t, key=name: self._on_done(key, t))
        return task

    def _on_done(self, name: str, task: asyncio.Task[Any]) -> None:
        if self._tasks.get(name) is task:
            self._tasks.pop(name, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.warning("%s task %s failed: %s", self._owner, name, exc, exc_info=exc)

    def is_running(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def get(self, name: str) -> asyncio.Task[Any] | None:
        return self._tasks.get(name)

    def cancel(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def drain(self, timeout: float) -> int:
        """Let live tasks finish for up to *timeout* seconds.

        Returns how many were still running when the wait ended.
        """
        tasks = [task for task in self._tasks.values() if not task.done()]
        if not tasks:
            return 0
        _done, pending = await asyncio.wait(tasks, timeout=timeout)
        return len(pending)

    def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            if not task.done():
                task.cancel()

    async def aclose(self) -> None:
        """Cancel everything and wait for the tasks to unwind."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        self.cancel_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def __len__(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Callable, Coroutine, Deque, Optional, Set, Tuple

from ..logging_utils import get_logger

_LOGGER = get_logger(__name__)


class Scheduler:
    """Deferred work, timers and background tasks for one event loop.

    ``defer`` runs callbacks on the next loop iteration in submission order.
    Callbacks deferred while a batch is running land in the following batch,
    so a callback that defers itself never starves the loop.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._deferred: Deque[Tuple[Callable[..., Any], Tuple[Any, ...]]] = deque()
        self._drain_handle: Optional[asyncio.Handle] = None
        self._tasks: Set[asyncio.Task[Any]] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None or self._loop.is_closed():
            self._loop = asyncio.get_running_loop()
        return self._loop

    @property
    def pending(self) -> int:
        return len(self._deferred)

    def defer(self, callback: Callable[..., Any], *args: Any) -> None:
        self._deferred.append((callback, args))
        if self._drain_handle is None:
            self._drain_handle = self.loop.call_soon(self._drain)

    def call_later(
        self, delay: float, callback: Callable[..., Any], *args: Any
    ) -> asyncio.TimerHandle:
        return self.loop.call_later(max(0.0, delay), self._guarded, callback, args)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: Optional[str] = None) -> asyncio.Task[Any]:
        task = self.loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    async def close(self) -> None:
        if self._drain_handle is not None:
            self._drain_handle.cancel()
            self._drain_handle = None
        self._deferred.clear()
        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _drain(self) -> None:
        self._drain_handle = None
        for _ in range(len(self._deferred)):
            callback, args = self._deferred.popleft()
            self._guarded(callback, args)
        if self._deferred and self._drain_handle is None:
            self._drain_handle = self.loop.call_soon(self._drain)

    def _guarded(self, callback: Callable[..., Any], args: Tuple[Any, ...]) -> None:
        try:
            callback(*args)
        except Exception:
            _LOGGER.exception("Scheduled callback %r failed", callback)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _LOGGER.error(
                "Background task %s failed", task.get_name(), exc_info=(type(exc), exc, exc.__traceback__)
            )


__all__ = ["Scheduler"]

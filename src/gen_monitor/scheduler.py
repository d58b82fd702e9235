from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Protocol, Set

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[None]]


class ScheduledTask(Protocol):
    def cancel(self) -> None:
        ...

    def done(self) -> bool:
        ...

    async def wait(self) -> None:
        ...


class Scheduler(Protocol):
    """
    Owner of every timer and background task belonging to one monitoring
    session. `cancel()` is the single teardown call.
    """

    @property
    def closed(self) -> bool:
        ...

    def schedule(self, delay: float, fn: Callback, *, name: str = "") -> ScheduledTask:
        ...

    def spawn(self, fn: Callback, *, name: str = "") -> ScheduledTask:
        ...

    def cancel(self) -> None:
        ...


class AsyncioTaskHandle:
    def __init__(self, task: "asyncio.Task[None]") -> None:
        self._task = task

    def cancel(self) -> None:
        if self._task is not asyncio.current_task():
            self._task.cancel()

    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> None:
        if self._task is asyncio.current_task():
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise


class TaskScheduler:
    """
    asyncio-backed scheduler. Delays are in abstract time units converted with
    `time_unit_s`.
    """

    def __init__(self, *, time_unit_s: float = 1.0) -> None:
        self.time_unit_s = time_unit_s
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(self, delay: float, fn: Callback, *, name: str = "") -> AsyncioTaskHandle:
        if self._closed:
            raise RuntimeError("scheduler is closed")
        return self._track(self._run_later(max(delay, 0.0) * self.time_unit_s, fn, name), name)

    def spawn(self, fn: Callback, *, name: str = "") -> AsyncioTaskHandle:
        if self._closed:
            raise RuntimeError("scheduler is closed")
        return self._track(run_logged(fn, name), name)

    def cancel(self) -> None:
        self._closed = True
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

    def _track(self, coro: Awaitable[None], name: str) -> AsyncioTaskHandle:
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return AsyncioTaskHandle(task)

    async def _run_later(self, delay_s: float, fn: Callback, name: str) -> None:
        await asyncio.sleep(delay_s)
        await run_logged(fn, name)


async def run_logged(fn: Callback, name: str = "") -> None:
    """Run a scheduled callback; failures are logged, cancellation propagates."""
    try:
        await fn()
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception(f"Scheduled task {name or fn!r} failed")

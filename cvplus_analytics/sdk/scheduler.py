"""
scheduler.py — timer abstraction used by the event queue.

EventQueue never calls asyncio.sleep or loop.call_later itself. It asks a Scheduler to
run a coroutine function after a delay and gets back a handle it can cancel. Production
uses AsyncioScheduler; tests substitute a manual scheduler and fire timers explicitly,
so backoff timing is checked without waiting on the wall clock.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Protocol, Set

logger = logging.getLogger(__name__)

Callback = Callable[[], Awaitable[None]]


class ScheduledHandle(Protocol):
    delay: float

    def cancel(self) -> None: ...

    @property
    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callback) -> ScheduledHandle: ...


class _TaskHandle:
    def __init__(self, task: "asyncio.Task[None]", delay: float):
        self._task = task
        self.delay = delay

    def cancel(self) -> None:
        self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()


class AsyncioScheduler:
    """
    One task per scheduled callback. Tasks are referenced from `_tasks` until they finish
    so the event loop cannot garbage-collect a pending timer.
    """

    def __init__(self) -> None:
        self._tasks: Set["asyncio.Task[None]"] = set()

    def call_later(self, delay: float, callback: Callback) -> ScheduledHandle:
        async def _run() -> None:
            if delay > 0:
                await asyncio.sleep(delay)
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("Scheduled callback %r failed", callback, exc_info=True)

        task = asyncio.get_running_loop().create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return _TaskHandle(task, delay)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()

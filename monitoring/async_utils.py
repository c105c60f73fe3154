import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set


logger = logging.getLogger(__name__)

TimerCallback = Callable[..., Awaitable[None]]


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


class ScheduledCall:
    """Cancellable handle for a callback registered with a scheduler."""

    def __init__(self, when: float):
        self.when = when
        self._cancelled = False
        self._timer: Optional[asyncio.TimerHandle] = None

    def cancel(self) -> None:
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()

    def cancelled(self) -> bool:
        return self._cancelled


class LoopScheduler:
    """Run coroutine callbacks after a delay on the running event loop.

    ``now()`` is the loop's monotonic clock, so timestamps recorded through the
    scheduler and delays scheduled on it share one time base.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._tasks: Set[asyncio.Task] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def now(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: TimerCallback, *args: Any) -> ScheduledCall:
        call = ScheduledCall(self.now() + delay)
        call._timer = self.loop.call_later(delay, self._spawn, call, callback, args)
        return call

    def _spawn(self, call: ScheduledCall, callback: TimerCallback, args: tuple) -> None:
        if call.cancelled():
            return
        task = self.loop.create_task(callback(*args))
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduled callback failed: %s", exc, exc_info=exc)

    async def shutdown(self) -> None:
        """Cancel callbacks that already started; pending handles are cancelled by their owners."""
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()

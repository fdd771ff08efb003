"""
Call-rate helpers: debounce, throttle and timing.

Used for search-as-you-type, scroll handlers and similar chatty inputs.
All timing goes through a Scheduler.
"""

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Set, Tuple, TypeVar

from .logging_config import get_core_logger
from .scheduler import LoopScheduler, Scheduler, TimerHandle

logger = get_core_logger()

T = TypeVar("T")


class Debouncer:
    """
    Delay calls until ``wait`` seconds pass without a new one.

    Only the arguments of the last call before the quiet period are used.
    ``func`` may be sync or async.
    """

    def __init__(
        self,
        func: Callable[..., Any],
        wait: float,
        scheduler: Optional[Scheduler] = None,
    ):
        self._func = func
        self.wait = wait
        self._scheduler = scheduler or LoopScheduler()
        self._timer: Optional[TimerHandle] = None
        self._pending: Optional[Tuple[tuple, dict]] = None
        self._tasks: Set[asyncio.Future] = set()

    @property
    def is_pending(self) -> bool:
        return self._timer is not None

    def call(self, *args: Any, **kwargs: Any) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._pending = (args, kwargs)
        self._timer = self._scheduler.call_later(self.wait, self._fire)

    __call__ = call

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._pending = None

    async def flush(self) -> None:
        """Run a pending call right away."""
        if self._timer is None:
            return
        self._timer.cancel()
        self._timer = None
        args, kwargs = self._pending
        self._pending = None
        result = self._func(*args, **kwargs)
        if inspect.isawaitable(result):
            await result

    def _fire(self) -> None:
        self._timer = None
        args, kwargs = self._pending
        self._pending = None
        try:
            result = self._func(*args, **kwargs)
        except Exception as e:
            logger.error("debounced_call_failed", error=str(e), error_type=type(e).__name__)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._finish)

    def _finish(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            error = task.exception()
            logger.error(
                "debounced_call_failed", error=str(error), error_type=type(error).__name__
            )


class Throttler:
    """
    Leading-edge throttle: run at most once per ``limit`` seconds.

    Calls made inside the window are dropped, not queued.
    """

    def __init__(
        self,
        func: Callable[..., T],
        limit: float,
        scheduler: Optional[Scheduler] = None,
    ):
        self._func = func
        self.limit = limit
        self._scheduler = scheduler or LoopScheduler()
        self._window_ends: Optional[float] = None
        self.dropped = 0

    @property
    def in_window(self) -> bool:
        return (
            self._window_ends is not None
            and self._scheduler.now() < self._window_ends
        )

    def call(self, *args: Any, **kwargs: Any) -> Optional[T]:
        """Returns func's result, or None when the call was dropped."""
        if self.in_window:
            self.dropped += 1
            return None
        self._window_ends = self._scheduler.now() + self.limit
        return self._func(*args, **kwargs)

    __call__ = call


async def measure_async_performance(
    name: str,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    scheduler: Optional[Scheduler] = None,
    **kwargs: Any,
) -> T:
    """Await func and log how long it took."""
    scheduler = scheduler or LoopScheduler()
    start = scheduler.now()
    try:
        return await func(*args, **kwargs)
    finally:
        logger.debug(
            "performance_measured",
            name=name,
            duration_ms=round((scheduler.now() - start) * 1000, 2),
        )

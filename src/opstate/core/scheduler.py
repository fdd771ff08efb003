"""
Scheduler Abstraction

Every delay in opstate (timeouts, retry backoff, batch flush intervals,
debounce windows) goes through a Scheduler so that time can be injected.

- LoopScheduler: real time, backed by the running asyncio loop
- VirtualScheduler: manual time for deterministic tests and simulations

Example:
    scheduler = VirtualScheduler()
    runner = AsyncOperationRunner(RunnerConfig(timeout=0.01), scheduler=scheduler)

    task = asyncio.ensure_future(runner.execute(slow_call))
    await scheduler.advance(0.01)   # timeout fires here
"""

import asyncio
import heapq
import itertools
import time
from typing import Any, Callable, List, Optional, Protocol, Tuple

from .logging_config import get_core_logger

logger = get_core_logger()

# Loop iterations granted to woken tasks after each virtual timer fires
SETTLE_ITERATIONS = 50


class TimerHandle(Protocol):
    """Anything returned by call_later that can be cancelled."""

    def cancel(self) -> None: ...


class Scheduler(Protocol):
    """Clock plus timer primitives used by every opstate component."""

    def now(self) -> float: ...

    def call_later(
        self, delay: float, callback: Callable[..., Any], *args: Any
    ) -> TimerHandle: ...

    async def sleep(self, delay: float) -> None: ...


class LoopScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def now(self) -> float:
        return time.monotonic()

    def call_later(
        self, delay: float, callback: Callable[..., Any], *args: Any
    ) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), callback, *args)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))


class VirtualTimerHandle:
    """Timer registered with a VirtualScheduler."""

    __slots__ = ("when", "callback", "args", "cancelled")

    def __init__(self, when: float, callback: Callable[..., Any], args: Tuple):
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def _run(self) -> None:
        self.callback(*self.args)


def _release(future: asyncio.Future) -> None:
    if not future.done():
        future.set_result(None)


class VirtualScheduler:
    """
    Scheduler whose clock only moves when advance() is awaited.

    Timers fire in deadline order (ties in registration order). Every
    delay passed to sleep() is recorded in ``sleeps`` so tests can assert
    on backoff schedules.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._timers: List[Tuple[float, int, VirtualTimerHandle]] = []
        self._sequence = itertools.count()
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self._now

    def call_later(
        self, delay: float, callback: Callable[..., Any], *args: Any
    ) -> VirtualTimerHandle:
        handle = VirtualTimerHandle(self._now + max(0.0, delay), callback, args)
        heapq.heappush(self._timers, (handle.when, next(self._sequence), handle))
        return handle

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        if delay <= 0:
            await asyncio.sleep(0)
            return

        future = asyncio.get_running_loop().create_future()
        handle = self.call_later(delay, _release, future)
        try:
            await future
        finally:
            handle.cancel()

    @property
    def pending_timers(self) -> int:
        """Number of armed, not-cancelled timers."""
        return sum(1 for _, _, handle in self._timers if not handle.cancelled)

    def next_deadline(self) -> Optional[float]:
        """Virtual time of the earliest armed timer, if any."""
        for when, _, handle in sorted(self._timers):
            if not handle.cancelled:
                return when
        return None

    async def settle(self) -> None:
        """Let runnable tasks progress without moving the clock."""
        for _ in range(SETTLE_ITERATIONS):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        """
        Move the clock forward, firing every timer that falls due.

        Tasks woken by a timer get to run (and arm new timers) before the
        next timer is considered, so chained delays inside the window fire too.
        """
        target = self._now + seconds
        await self.settle()

        while self._timers and self._timers[0][0] <= target:
            when, _, handle = heapq.heappop(self._timers)
            if handle.cancelled:
                continue
            self._now = max(self._now, when)
            try:
                handle._run()
            except Exception as e:
                logger.error(
                    "virtual_timer_callback_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
            await self.settle()

        self._now = target
        await self.settle()

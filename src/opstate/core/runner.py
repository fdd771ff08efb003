"""
Async Operation Runner

Tracks one asynchronous unit of work: loading flag, result, error, duration.

State machine:
    idle --execute--> loading --success--> data set
                              --failure--> error set
                              --timeout--> error = OperationTimeoutError
                              --cancel---> not loading, duration frozen

Key guarantees:
- is_loading is False after every terminal transition
- After settlement at most one of data/error is set
- A newer execute() supersedes an older one; the older caller still gets
  its own result or exception, but no longer touches state
- Timeouts and cancellation are cooperative: the wrapped work keeps running,
  its outcome is discarded
"""

import asyncio
import inspect
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Tuple, TypeVar

from .exceptions import ConfigurationError, OperationTimeoutError
from .loading_registry import LoadingRegistry
from .logging_config import get_core_logger
from .retry import BackoffStrategy, RetryContext, RetryPolicy
from .scheduler import LoopScheduler, Scheduler, TimerHandle
from .state import INITIAL_STATE, OperationState, StateCallback, StateStore

logger = get_core_logger()

T = TypeVar("T")

GLOBAL_LOADER_KEY = "loading.operation"


@dataclass
class RunnerConfig:
    """
    Options for an AsyncOperationRunner. Durations are in seconds.

    ``retry_multiplier`` of 1.0 gives a constant ``retry_delay`` between
    retries; larger values grow it exponentially up to ``max_retry_delay``.
    """

    timeout: float = 30.0
    retries: int = 0
    retry_delay: float = 1.0
    retry_multiplier: float = 1.0
    max_retry_delay: float = 30.0
    show_global_loader: bool = False

    def __post_init__(self):
        if self.timeout < 0:
            raise ConfigurationError("timeout", self.timeout, "must be >= 0")
        if self.retries < 0:
            raise ConfigurationError("retries", self.retries, "must be >= 0")
        if self.retry_delay < 0:
            raise ConfigurationError("retry_delay", self.retry_delay, "must be >= 0")

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.retries,
            base_delay=self.retry_delay,
            max_delay=self.max_retry_delay,
            multiplier=self.retry_multiplier,
            backoff=(
                BackoffStrategy.CONSTANT
                if self.retry_multiplier == 1.0
                else BackoffStrategy.EXPONENTIAL
            ),
        )

    def with_overrides(self, **overrides: Any) -> "RunnerConfig":
        return replace(self, **overrides)

    # Presets used across the application's pages

    @classmethod
    def api(cls, **overrides: Any) -> "RunnerConfig":
        """Backend calls: generous timeout, three retries, global spinner."""
        return cls(
            timeout=30.0, retries=3, retry_delay=1.0, show_global_loader=True
        ).with_overrides(**overrides)

    @classmethod
    def form(cls, **overrides: Any) -> "RunnerConfig":
        return cls(timeout=15.0, retries=1, retry_delay=0.5).with_overrides(
            **overrides
        )

    @classmethod
    def image(cls, **overrides: Any) -> "RunnerConfig":
        """Uploads and image processing are slow; allow a full minute."""
        return cls(timeout=60.0, retries=2, retry_delay=2.0).with_overrides(
            **overrides
        )

    @classmethod
    def search(cls, **overrides: Any) -> "RunnerConfig":
        return cls(timeout=10.0, retries=1, retry_delay=0.3).with_overrides(
            **overrides
        )


class _Invocation:
    """One execute() call. Once superseded it stops writing state."""

    __slots__ = ("superseded", "task", "timeout_future", "timer")

    def __init__(self):
        self.superseded = False
        self.task: Optional[asyncio.Future] = None
        self.timeout_future: Optional[asyncio.Future] = None
        self.timer: Optional[TimerHandle] = None


def _discard_outcome(task: asyncio.Future) -> None:
    """Retrieve the outcome of work nobody awaits any more."""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug(
            "operation_outcome_discarded",
            error=str(error),
            error_type=type(error).__name__,
        )


class AsyncOperationRunner(Generic[T]):
    """
    Runs async callables and exposes their lifecycle as observable state.

    Example:
        runner = AsyncOperationRunner(RunnerConfig.api(), on_error=notify)
        listings = await runner.execute(client.fetch_listings, city="Austin")

        runner.loading     # False
        runner.data        # same object as listings
        runner.can_retry   # False until something fails
    """

    def __init__(
        self,
        config: Optional[RunnerConfig] = None,
        *,
        scheduler: Optional[Scheduler] = None,
        loading_registry: Optional[LoadingRegistry] = None,
        on_success: Optional[Callable[[T], Any]] = None,
        on_error: Optional[Callable[[BaseException], Any]] = None,
        on_finally: Optional[Callable[[], Any]] = None,
        name: Optional[str] = None,
    ):
        self.config = config or RunnerConfig()
        self.name = name
        self._scheduler = scheduler or LoopScheduler()
        self._loading_registry = loading_registry
        self._on_success = on_success
        self._on_error = on_error
        self._on_finally = on_finally

        self._store: StateStore[T] = StateStore()
        self._retry = RetryContext(policy=self.config.retry_policy())
        self._current: Optional[_Invocation] = None
        self._last_call: Optional[Tuple[Callable[..., Awaitable[T]], tuple, dict]] = None
        self._is_timed_out = False

    # -- observable state -------------------------------------------------

    def get_state(self) -> OperationState:
        return self._store.get_state()

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        return self._store.subscribe(callback)

    @property
    def loading(self) -> bool:
        return self._store.get_state().is_loading

    @property
    def error(self) -> Optional[BaseException]:
        return self._store.get_state().error

    @property
    def data(self) -> Optional[T]:
        return self._store.get_state().data

    @property
    def duration(self) -> Optional[float]:
        return self._store.get_state().duration

    @property
    def is_timed_out(self) -> bool:
        return self._is_timed_out

    @property
    def retry_count(self) -> int:
        return self._retry.retry_count

    @property
    def can_retry(self) -> bool:
        return self._retry.can_retry and not self.loading

    def snapshot(self) -> Dict[str, Any]:
        """Everything a UI binding needs, in one dict."""
        state = self._store.get_state()
        return {
            "loading": state.is_loading,
            "error": state.error,
            "data": state.data,
            "duration": state.duration,
            "is_timed_out": self._is_timed_out,
            "retry_count": self.retry_count,
            "can_retry": self.can_retry,
        }

    # -- operations -------------------------------------------------------

    def bind(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> None:
        """Set the function used by execute() and retry() when none is given."""
        self._last_call = (func, args, kwargs)

    async def execute(
        self, func: Optional[Callable[..., Awaitable[T]]] = None, *args: Any, **kwargs: Any
    ) -> T:
        """
        Run ``func(*args, **kwargs)`` and track it.

        Returns:
            The awaited result

        Raises:
            OperationTimeoutError: if the timeout fires before the work settles
            Whatever the work raised, unchanged
        """
        if func is None:
            if self._last_call is None:
                raise ValueError("execute() needs a function when none is bound")
            func, args, kwargs = self._last_call
        else:
            self._last_call = (func, args, kwargs)

        if self._current is not None:
            self._current.superseded = True
            logger.debug("operation_superseded", runner=self.name)

        invocation = _Invocation()
        self._current = invocation
        self._is_timed_out = False

        start_time = self._scheduler.now()
        self._store.update(
            is_loading=True,
            error=None,
            data=None,
            start_time=start_time,
            duration=None,
        )
        self._set_global_loader(True)

        async def call() -> T:
            return await func(*args, **kwargs)

        invocation.task = asyncio.ensure_future(call())
        timeout = self.config.timeout
        if timeout > 0:
            invocation.timeout_future = asyncio.get_running_loop().create_future()
            invocation.timer = self._scheduler.call_later(
                timeout, self._on_timeout, invocation, start_time
            )

        try:
            result = await self._await_outcome(invocation)
        except asyncio.CancelledError:
            # The awaiting caller went away: take the work down with it
            invocation.task.cancel()
            if not invocation.superseded:
                invocation.superseded = True
                self._store.update(
                    is_loading=False,
                    duration=self._scheduler.now() - start_time,
                )
            raise
        except Exception as e:
            # Timed-out and superseded calls have already released the state
            if invocation.superseded:
                raise

            self._store.update(
                is_loading=False,
                error=e,
                duration=self._scheduler.now() - start_time,
            )
            logger.info(
                "operation_failed",
                runner=self.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            self._fire_hook("on_error", self._on_error, e)
            raise
        else:
            if invocation.superseded:
                return result

            self._retry.retry_count = 0
            self._store.update(
                is_loading=False,
                error=None,
                data=result,
                duration=self._scheduler.now() - start_time,
            )
            logger.debug(
                "operation_succeeded",
                runner=self.name,
                duration=round(self.duration or 0.0, 4),
            )
            self._fire_hook("on_success", self._on_success, result)
            return result
        finally:
            if invocation.timer is not None:
                invocation.timer.cancel()
                invocation.timer = None
            if self._current is invocation:
                self._set_global_loader(False)
            self._fire_hook("on_finally", self._on_finally)

    async def _await_outcome(self, invocation: _Invocation) -> T:
        task = invocation.task
        if invocation.timeout_future is None:
            return await task

        await asyncio.wait(
            {task, invocation.timeout_future},
            return_when=asyncio.FIRST_COMPLETED,
        )
        # Once the timer has fired the state already reads timed out, even if
        # the work settled in the same loop iteration
        if invocation.timeout_future.done():
            task.add_done_callback(_discard_outcome)
            raise invocation.timeout_future.exception()

        return task.result()

    def _on_timeout(self, invocation: _Invocation, start_time: float) -> None:
        invocation.timer = None
        if invocation.superseded or invocation.task.done():
            return

        invocation.superseded = True
        error = OperationTimeoutError(self.config.timeout, operation=self.name)
        self._is_timed_out = True
        self._store.update(
            is_loading=False,
            error=error,
            duration=self._scheduler.now() - start_time,
        )
        logger.warning(
            "operation_timed_out",
            runner=self.name,
            timeout_seconds=self.config.timeout,
        )
        self._fire_hook("on_error", self._on_error, error)
        if self._current is invocation:
            self._cleanup(invocation)

        if invocation.timeout_future is not None and not invocation.timeout_future.done():
            invocation.timeout_future.set_exception(error)

    async def retry(self) -> Optional[T]:
        """
        Re-run the last executed function after the configured delay.

        Returns None without doing anything when nothing has run yet or the
        retry budget is spent.
        """
        if self._last_call is None or not self._retry.can_retry:
            logger.debug(
                "retry_refused",
                runner=self.name,
                retry_count=self.retry_count,
                retries=self.config.retries,
            )
            return None

        delay = self._retry.next_delay
        self._retry.retry_count += 1
        logger.info(
            "operation_retry",
            runner=self.name,
            retry_count=self.retry_count,
            delay=delay,
        )
        if delay > 0:
            await self._scheduler.sleep(delay)
        return await self.execute()

    def cancel(self) -> None:
        """Stop tracking the in-flight call; its outcome will be ignored."""
        invocation = self._current
        if invocation is not None:
            invocation.superseded = True
            self._cleanup(invocation)

        state = self._store.get_state()
        duration = (
            self._scheduler.now() - state.start_time
            if state.start_time is not None
            else None
        )
        self._store.update(is_loading=False, duration=duration)
        logger.debug("operation_cancelled", runner=self.name)

    def clear_error(self) -> None:
        """Dismiss the current error without touching data or loading."""
        if self._store.get_state().error is not None:
            self._store.update(error=None)

    def reset(self) -> None:
        """Return to the initial state. Safe to call at any time."""
        if self._current is not None:
            self._current.superseded = True
            self._cleanup(self._current)
        self._current = None
        self._last_call = None
        self._retry.retry_count = 0
        self._is_timed_out = False
        self._set_global_loader(False)
        self._store.set(INITIAL_STATE)

    # -- helpers ----------------------------------------------------------

    def _cleanup(self, invocation: _Invocation) -> None:
        if invocation.timer is not None:
            invocation.timer.cancel()
            invocation.timer = None
        self._set_global_loader(False)

    def _set_global_loader(self, is_loading: bool) -> None:
        if self.config.show_global_loader and self._loading_registry is not None:
            self._loading_registry.set_loading(GLOBAL_LOADER_KEY, is_loading)

    def _fire_hook(self, hook: str, callback: Optional[Callable], *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                asyncio.ensure_future(result).add_done_callback(_discard_outcome)
        except Exception as e:
            logger.error(
                "operation_hook_error",
                runner=self.name,
                hook=hook,
                error=str(e),
                error_type=type(e).__name__,
            )


def execute_operation(
    func: Callable[..., Awaitable[T]],
    config: Optional[RunnerConfig] = None,
    **runner_options: Any,
) -> AsyncOperationRunner[T]:
    """
    Build a runner bound to ``func``.

    ``await runner.execute()`` runs it; ``await runner.retry()`` re-runs it.
    Keyword options (scheduler, loading_registry, on_success, on_error,
    on_finally, name) are passed to AsyncOperationRunner.
    """
    runner: AsyncOperationRunner[T] = AsyncOperationRunner(config, **runner_options)
    runner.bind(func)
    return runner


class AsyncErrorRunner(AsyncOperationRunner[T]):
    """
    Runner for call sites that display errors rather than handle them.

    Wraps one function. ``execute(*args)`` returns None instead of raising
    when the function fails; the error stays in ``error`` until the next
    call or ``clear_error()``. ``retry()`` re-runs the function right away
    with the arguments of the last ``execute()`` and has no retry budget.
    No timeout is armed unless a config asks for one.

    Example:
        submit = AsyncErrorRunner(api.submit_application, on_error=show_toast)
        await submit.execute(form_data)
        if submit.error:
            render_banner(submit.error, on_click=submit.retry)
    """

    def __init__(
        self,
        func: Callable[..., Awaitable[T]],
        config: Optional[RunnerConfig] = None,
        **runner_options: Any,
    ):
        super().__init__(config or RunnerConfig(timeout=0), **runner_options)
        self._func = func
        self._last_args: Tuple[tuple, dict] = ((), {})

    @property
    def can_retry(self) -> bool:
        return not self.loading

    async def execute(self, *args: Any, **kwargs: Any) -> Optional[T]:
        self._last_args = (args, kwargs)
        try:
            return await super().execute(self._func, *args, **kwargs)
        except Exception as e:
            logger.debug(
                "operation_error_captured",
                runner=self.name,
                error_type=type(e).__name__,
            )
            return None

    async def retry(self) -> Optional[T]:
        args, kwargs = self._last_args
        logger.info("operation_retry", runner=self.name)
        return await self.execute(*args, **kwargs)

    def reset(self) -> None:
        super().reset()
        self._last_args = ((), {})

"""
Retry Policies and Backoff

Three layers:
- RetryPolicy: pure delay arithmetic (exponential, linear or constant, capped)
- execute_with_retry(): keyed retry loop used by RequestDeduplicator
- RetryHandler: caller-driven retries with a visible retry counter

Retry exhaustion always re-raises the last original error. Callers that need
to tell "failed once" from "failed after retries" inspect the retry count.

Failure reporting policy:
- A failure that still leaves retry budget is logged at WARNING
  (``retry_attempt_failed``)
- The failure that exhausts the budget is logged at ERROR
  (``retry_exhausted``) and handed to ``on_exhausted`` when one is set
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from .exceptions import ConfigurationError
from .logging_config import LogContext, get_core_logger
from .scheduler import LoopScheduler, Scheduler

logger = get_core_logger()

T = TypeVar("T")


class BackoffStrategy(str, Enum):
    """How the delay grows between attempts."""

    EXPONENTIAL = "exponential"  # base * multiplier ** n
    LINEAR = "linear"  # base * (n + 1)
    CONSTANT = "constant"  # base


@dataclass
class RetryPolicy:
    """
    Bounded retry schedule.

    Example:
        policy = RetryPolicy(max_retries=3, base_delay=0.1, multiplier=2)
        [policy.compute_delay(n) for n in range(3)]  # [0.1, 0.2, 0.4]
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0
    backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL

    def __post_init__(self):
        if self.max_retries < 0:
            raise ConfigurationError("max_retries", self.max_retries, "must be >= 0")
        if self.base_delay < 0:
            raise ConfigurationError("base_delay", self.base_delay, "must be >= 0")
        if self.max_delay < 0:
            raise ConfigurationError("max_delay", self.max_delay, "must be >= 0")
        self.backoff = BackoffStrategy(self.backoff)

    def compute_delay(self, retry_count: int) -> float:
        """Delay before the retry that follows ``retry_count`` earlier retries."""
        if self.backoff == BackoffStrategy.EXPONENTIAL:
            delay = self.base_delay * (self.multiplier ** retry_count)
        elif self.backoff == BackoffStrategy.LINEAR:
            delay = self.base_delay * (retry_count + 1)
        else:
            delay = self.base_delay
        return min(delay, self.max_delay)

    def can_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retries


@dataclass
class RetryContext:
    """Retry counter bound to its policy."""

    policy: RetryPolicy
    retry_count: int = 0

    @property
    def max_retries(self) -> int:
        return self.policy.max_retries

    @property
    def can_retry(self) -> bool:
        return self.policy.can_retry(self.retry_count)

    @property
    def next_delay(self) -> float:
        return self.policy.compute_delay(self.retry_count)


def _report_failure(
    error: BaseException,
    retry_count: int,
    max_retries: int,
    on_exhausted: Optional[Callable[[BaseException], Any]] = None,
    **context: Any,
) -> None:
    """Apply the failure reporting policy described in the module docstring."""
    if retry_count < max_retries:
        logger.warning(
            "retry_attempt_failed",
            retry_count=retry_count,
            max_retries=max_retries,
            error=str(error),
            error_type=type(error).__name__,
            **context,
        )
        return

    logger.error(
        "retry_exhausted",
        retry_count=retry_count,
        max_retries=max_retries,
        error=str(error),
        error_type=type(error).__name__,
        **context,
    )
    if on_exhausted is not None:
        try:
            on_exhausted(error)
        except Exception as e:
            logger.error("retry_exhausted_callback_error", error=str(e))


async def execute_with_retry(
    key: str,
    request_fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    scheduler: Optional[Scheduler] = None,
    counters: Optional[Dict[str, int]] = None,
) -> T:
    """
    Run request_fn, retrying on failure while the policy allows.

    ``counters[key]`` mirrors the retries made so far and is removed once the
    request settles, whatever the outcome.

    Raises:
        The last exception raised by request_fn, unchanged.
    """
    scheduler = scheduler or LoopScheduler()
    counters = counters if counters is not None else {}
    retries = 0
    counters[key] = retries

    with LogContext(retry_key=key):
        try:
            while True:
                try:
                    return await request_fn()
                except Exception as e:
                    _report_failure(e, retries, policy.max_retries)
                    if not policy.can_retry(retries):
                        raise

                    delay = policy.compute_delay(retries)
                    retries += 1
                    counters[key] = retries
                    logger.debug("retry_scheduled", retry_count=retries, delay=delay)
                    await scheduler.sleep(delay)
        finally:
            counters.pop(key, None)


class RetryHandler(Generic[T]):
    """
    Caller-driven retries of a fixed operation.

    Each retry() waits ``policy.compute_delay(retry_count)`` and runs the
    operation once. Success resets the counter; failure increments it and
    re-raises. Once ``retry_count`` reaches ``max_retries`` further calls are
    refused and return None without running anything.

    Example:
        handler = RetryHandler(reload_messages, RetryPolicy(max_retries=3))
        try:
            await handler.retry()
        except ConnectionError:
            show_retry_button(enabled=handler.can_retry)
    """

    def __init__(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
        scheduler: Optional[Scheduler] = None,
        on_exhausted: Optional[Callable[[BaseException], Any]] = None,
    ):
        self._operation = operation
        self.policy = policy or RetryPolicy()
        self._scheduler = scheduler or LoopScheduler()
        self._on_exhausted = on_exhausted
        self._context = RetryContext(policy=self.policy)
        self.is_retrying = False
        self.last_error: Optional[BaseException] = None

    @property
    def retry_count(self) -> int:
        return self._context.retry_count

    @property
    def can_retry(self) -> bool:
        return self._context.can_retry

    async def retry(self) -> Optional[T]:
        if not self.can_retry or self.is_retrying:
            logger.debug(
                "retry_refused",
                retry_count=self.retry_count,
                max_retries=self.policy.max_retries,
                is_retrying=self.is_retrying,
            )
            return None

        self.is_retrying = True
        try:
            await self._scheduler.sleep(self._context.next_delay)
            result = await self._operation()
        except Exception as e:
            self._context.retry_count += 1
            self.last_error = e
            _report_failure(
                e,
                self._context.retry_count,
                self.policy.max_retries,
                self._on_exhausted,
            )
            raise
        else:
            self._context.retry_count = 0
            self.last_error = None
            return result
        finally:
            self.is_retrying = False

    def reset(self) -> None:
        self._context.retry_count = 0
        self.is_retrying = False
        self.last_error = None

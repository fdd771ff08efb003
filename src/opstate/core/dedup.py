"""
Request De-duplication

Collapses concurrent requests that share a key into one in-flight call.
Every caller of a key that is already in flight awaits the same future
and observes the same settlement (same value or same exception).

The pending entry is removed as soon as the call settles, so the next
request for that key starts fresh. Nothing is cached beyond that point;
use BoundedCache for results that should outlive the request.

Example:
    dedup = RequestDeduplicator(DedupConfig(max_retries=2))

    # Both awaits share one fetch_property("42") call
    a, b = await asyncio.gather(
        dedup.request("property:42", lambda: fetch_property("42")),
        dedup.request("property:42", lambda: fetch_property("42")),
    )
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .exceptions import ConfigurationError
from .logging_config import get_core_logger
from .retry import BackoffStrategy, RetryPolicy, execute_with_retry
from .scheduler import LoopScheduler, Scheduler

logger = get_core_logger()

T = TypeVar("T")


@dataclass
class DedupConfig:
    """
    Configuration for request de-duplication.

    Retries back off linearly: retry n waits ``retry_delay * n``.
    """

    max_retries: int = 3
    retry_delay: float = 1.0
    max_retry_delay: float = 60.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ConfigurationError("max_retries", self.max_retries, "must be >= 0")
        if self.retry_delay < 0:
            raise ConfigurationError("retry_delay", self.retry_delay, "must be >= 0")

    def retry_policy(self, max_retries: Optional[int] = None) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries if max_retries is None else max_retries,
            base_delay=self.retry_delay,
            max_delay=self.max_retry_delay,
            backoff=BackoffStrategy.LINEAR,
        )


class RequestDeduplicator:
    """At most one in-flight call per key, with per-call retries."""

    def __init__(
        self,
        config: Optional[DedupConfig] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self.config = config or DedupConfig()
        self._scheduler = scheduler or LoopScheduler()
        self._pending: Dict[str, asyncio.Future] = {}
        self._retry_counts: Dict[str, int] = {}
        self._stats = {
            "requests": 0,
            "joined": 0,
            "started": 0,
            "failures": 0,
        }

    async def request(
        self,
        key: str,
        request_fn: Callable[[], Awaitable[T]],
        *,
        cache: bool = True,
        max_retries: Optional[int] = None,
    ) -> T:
        """
        Run request_fn under ``key``, joining an in-flight call if one exists.

        Args:
            key: De-duplication key
            request_fn: Zero-argument async callable
            cache: If False, always start an independent call
            max_retries: Override the configured retry budget

        Raises:
            The last exception raised by request_fn, unchanged.
        """
        self._stats["requests"] += 1

        if cache and key in self._pending:
            self._stats["joined"] += 1
            logger.debug("dedup_joined", key=key)
            return await asyncio.shield(self._pending[key])

        self._stats["started"] += 1
        policy = self.config.retry_policy(max_retries)
        future = asyncio.ensure_future(
            execute_with_retry(
                key,
                request_fn,
                policy,
                scheduler=self._scheduler,
                counters=self._retry_counts,
            )
        )

        if cache:
            self._pending[key] = future
        future.add_done_callback(
            lambda settled: self._on_settled(key, settled, cache)
        )

        logger.debug("dedup_started", key=key, cache=cache)
        # Shielded so one caller's cancellation does not fail the others
        return await asyncio.shield(future)

    def _on_settled(self, key: str, future: asyncio.Future, cache: bool) -> None:
        if cache and self._pending.get(key) is future:
            del self._pending[key]

        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self._stats["failures"] += 1
            logger.warning(
                "dedup_request_failed",
                key=key,
                error=str(error),
                error_type=type(error).__name__,
            )

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    def pending_keys(self) -> List[str]:
        return list(self._pending.keys())

    def retry_count(self, key: str) -> int:
        """Retries made so far by the in-flight call for ``key``."""
        return self._retry_counts.get(key, 0)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "pending": len(self._pending),
            "max_retries": self.config.max_retries,
            "retry_delay": self.config.retry_delay,
        }

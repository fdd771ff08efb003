"""
Batch Processor

Coalesces individual add() calls into batched processor calls, bounding
both batch size and latency:

- Reaching ``batch_size`` hands the batch off immediately
- Otherwise the first item of a batch arms a ``flush_interval`` timer
- Items added while a batch is being processed start the next batch

Every added item lands in exactly one processor call, and the processor is
never called with an empty batch. Processor failures are logged and kept as
``last_error``; they never reach the code that called add().
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Set, TypeVar, Union

from .exceptions import BatchProcessingError, ConfigurationError
from .logging_config import get_core_logger
from .scheduler import LoopScheduler, Scheduler, TimerHandle

logger = get_core_logger()

T = TypeVar("T")

BatchFn = Callable[[List[T]], Union[Awaitable[None], None]]


@dataclass
class BatchConfig:
    """Configuration for a batch processor."""

    batch_size: int = 10
    flush_interval: float = 1.0  # seconds

    def __post_init__(self):
        if self.batch_size < 1:
            raise ConfigurationError("batch_size", self.batch_size, "must be >= 1")
        if self.flush_interval < 0:
            raise ConfigurationError(
                "flush_interval", self.flush_interval, "must be >= 0"
            )


class BatchProcessor(Generic[T]):
    """
    Size- and time-bounded batching in front of a processor function.

    Example:
        async def mark_read(message_ids):
            await messages.update_many(message_ids, read=True)

        batcher = BatchProcessor(mark_read, BatchConfig(batch_size=20))
        for message_id in visible_ids:
            batcher.add(message_id)
        ...
        await batcher.close()
    """

    def __init__(
        self,
        processor: BatchFn,
        config: Optional[BatchConfig] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self._processor = processor
        self.config = config or BatchConfig()
        self._scheduler = scheduler or LoopScheduler()
        self._queue: List[T] = []
        self._timer: Optional[TimerHandle] = None
        self._in_flight: Set[asyncio.Future] = set()
        self.last_error: Optional[BatchProcessingError] = None
        self._stats = {
            "batches": 0,
            "items": 0,
            "failures": 0,
        }

    @property
    def pending_count(self) -> int:
        """Items waiting for the next flush."""
        return len(self._queue)

    def add(self, item: T) -> None:
        """Queue an item. Must be called with an event loop running."""
        self._queue.append(item)

        if len(self._queue) >= self.config.batch_size:
            self._spawn(self._take_batch())
        elif self._timer is None:
            self._timer = self._scheduler.call_later(
                self.config.flush_interval, self._on_interval
            )

    async def flush(self) -> None:
        """Process whatever is queued now. No-op when the queue is empty."""
        batch = self._take_batch()
        if batch:
            await self._process(batch)

    async def close(self) -> None:
        """Flush the remainder and wait for every in-flight batch."""
        await self.flush()
        if self._in_flight:
            await asyncio.gather(*self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "pending": len(self._queue),
            "in_flight": len(self._in_flight),
            "batch_size": self.config.batch_size,
            "flush_interval": self.config.flush_interval,
        }

    def _take_batch(self) -> List[T]:
        """Swap the queue out and disarm the interval timer."""
        batch, self._queue = self._queue, []
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        return batch

    def _on_interval(self) -> None:
        self._timer = None
        self._spawn(self._take_batch())

    def _spawn(self, batch: List[T]) -> None:
        if not batch:
            return
        task = asyncio.ensure_future(self._process(batch))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _process(self, batch: List[T]) -> None:
        self._stats["batches"] += 1
        self._stats["items"] += len(batch)

        try:
            result = self._processor(batch)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            self._stats["failures"] += 1
            self.last_error = BatchProcessingError(len(batch), cause=e)
            logger.error(
                "batch_processing_failed",
                batch_size=len(batch),
                error=str(e),
                error_type=type(e).__name__,
            )
        else:
            logger.debug("batch_processed", batch_size=len(batch))

"""
Operation Queues

- SequentialRunner: strictly one at a time, per-item error isolation
- ParallelRunner: all at once, all-settled join
- RunnerGroup: independent named runners viewed together

Results and errors are always positional: ``results[i]`` / ``errors[i]``
belong to the i-th queued operation, with None in the slot that does not
apply.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Generic, Iterable, List, Optional, TypeVar

from .logging_config import get_core_logger, log_operation
from .runner import AsyncOperationRunner, RunnerConfig
from .scheduler import LoopScheduler, Scheduler

logger = get_core_logger()

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]


class SequentialRunner(Generic[T]):
    """
    Runs queued operations one after another through a single runner.

    A failing item does not stop the queue; its exception lands in
    ``errors`` and the next item starts once it has settled.

    Example:
        uploads = SequentialRunner(RunnerConfig.image())
        for photo in photos:
            uploads.add_to_queue(lambda photo=photo: storage.upload(photo))
        results = await uploads.execute_queue()
    """

    def __init__(
        self,
        config: Optional[RunnerConfig] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self._scheduler = scheduler or LoopScheduler()
        self.runner: AsyncOperationRunner[T] = AsyncOperationRunner(
            config, scheduler=self._scheduler, name="sequential"
        )
        self.queue: List[Operation] = []
        self.current_index = 0
        self.results: List[Optional[T]] = []
        self.errors: List[Optional[BaseException]] = []

    @property
    def loading(self) -> bool:
        return self.runner.loading

    @property
    def error(self) -> Optional[BaseException]:
        return self.runner.error

    @property
    def progress(self) -> float:
        """Percentage of the queue that has been reached."""
        if not self.queue:
            return 0.0
        return self.current_index / len(self.queue) * 100

    def add_to_queue(self, operation: Operation) -> None:
        self.queue.append(operation)

    async def execute_queue(self) -> List[Optional[T]]:
        if not self.queue:
            return []

        results: List[Optional[T]] = []
        errors: List[Optional[BaseException]] = []

        with log_operation(
            logger, "sequential_queue", clock=self._scheduler.now, size=len(self.queue)
        ):
            for index, operation in enumerate(list(self.queue)):
                self.current_index = index
                try:
                    result = await self.runner.execute(operation)
                except Exception as e:
                    results.append(None)
                    errors.append(e)
                    logger.debug(
                        "sequential_item_failed",
                        index=index,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                else:
                    results.append(result)
                    errors.append(None)

            self.current_index = len(self.queue)

        self.results = results
        self.errors = errors
        return results

    def reset_queue(self) -> None:
        self.queue = []
        self.current_index = 0
        self.results = []
        self.errors = []
        self.runner.reset()


class ParallelRunner(Generic[T]):
    """
    Runs queued operations concurrently and waits for all of them.

    Each operation gets its own runner, so the configured timeout applies
    per operation. One failure never cancels the others. ``max_concurrency``
    optionally caps how many operations are awaited at the same time.
    """

    def __init__(
        self,
        config: Optional[RunnerConfig] = None,
        scheduler: Optional[Scheduler] = None,
        max_concurrency: Optional[int] = None,
    ):
        self.config = config
        self._scheduler = scheduler or LoopScheduler()
        self.max_concurrency = max_concurrency
        self.runners: List[AsyncOperationRunner[T]] = []
        self.operations: List[Operation] = []
        self.results: List[Optional[T]] = []
        self.errors: List[Optional[BaseException]] = []
        self.completed_count = 0
        self.error_count = 0
        self.loading = False

    @property
    def progress(self) -> float:
        """Percentage of operations that completed successfully."""
        if not self.operations:
            return 0.0
        return self.completed_count / len(self.operations) * 100

    def add_operation(self, operation: Operation) -> None:
        self.operations.append(operation)

    async def execute_all(self) -> List[Optional[T]]:
        if not self.operations:
            return []

        operations = list(self.operations)
        self.loading = True
        self.results = [None] * len(operations)
        self.errors = [None] * len(operations)
        self.completed_count = 0
        self.error_count = 0

        semaphore = (
            asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None
        )

        self.runners = [
            AsyncOperationRunner(
                self.config, scheduler=self._scheduler, name=f"parallel[{index}]"
            )
            for index in range(len(operations))
        ]

        async def run_one(index: int, operation: Operation) -> None:
            runner = self.runners[index]
            try:
                if semaphore is None:
                    result = await runner.execute(operation)
                else:
                    async with semaphore:
                        result = await runner.execute(operation)
            except Exception as e:
                self.errors[index] = e
                self.error_count += 1
                logger.debug(
                    "parallel_item_failed",
                    index=index,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            else:
                self.results[index] = result
                self.completed_count += 1

        try:
            with log_operation(
                logger,
                "parallel_operations",
                clock=self._scheduler.now,
                size=len(operations),
            ):
                await asyncio.gather(
                    *(run_one(i, op) for i, op in enumerate(operations)),
                    return_exceptions=True,
                )
        finally:
            self.loading = False

        return list(self.results)

    def reset(self) -> None:
        for runner in self.runners:
            runner.reset()
        self.runners = []
        self.operations = []
        self.results = []
        self.errors = []
        self.completed_count = 0
        self.error_count = 0
        self.loading = False


class RunnerGroup:
    """
    A set of independently keyed runners, e.g. one per dashboard panel.

    Example:
        panels = RunnerGroup(["listings", "applications", "messages"])
        await panels["listings"].execute(fetch_listings)
        panels.is_any_loading
    """

    def __init__(
        self,
        keys: Iterable[str],
        config: Optional[RunnerConfig] = None,
        **runner_options: Any,
    ):
        self.runners: Dict[str, AsyncOperationRunner] = {
            key: AsyncOperationRunner(config, name=key, **runner_options)
            for key in keys
        }

    def __getitem__(self, key: str) -> AsyncOperationRunner:
        return self.runners[key]

    def __contains__(self, key: str) -> bool:
        return key in self.runners

    @property
    def is_any_loading(self) -> bool:
        return any(runner.loading for runner in self.runners.values())

    @property
    def has_any_error(self) -> bool:
        return any(runner.error is not None for runner in self.runners.values())

    @property
    def errors(self) -> Dict[str, BaseException]:
        return {
            key: runner.error
            for key, runner in self.runners.items()
            if runner.error is not None
        }

    def reset_all(self) -> None:
        for runner in self.runners.values():
            runner.reset()

    def cancel_all(self) -> None:
        for runner in self.runners.values():
            runner.cancel()

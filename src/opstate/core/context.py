"""
Operation Context

One explicitly constructed bundle of the shared pieces (scheduler, memory
cache, request de-duplicator, loading registry) for a session. Components
receive what they need from here instead of reaching for module globals,
so two contexts (or two tests) never share state.

Example:
    ctx = OperationContext.from_settings(get_settings())

    runner = ctx.create_runner("api", on_error=show_toast)
    listing = await ctx.deduplicator.request(
        "property:42", lambda: client.get_property(42)
    )
    ctx.cache.set("property:42", listing)
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .batch import BatchConfig, BatchFn, BatchProcessor
from .cache import BoundedCache, CacheConfig
from .config import Settings, get_settings
from .dedup import DedupConfig, RequestDeduplicator
from .loading_registry import LoadingRegistry
from .logging_config import configure_logging, get_core_logger
from .orchestration import ParallelRunner, RunnerGroup, SequentialRunner
from .retry import RetryHandler, RetryPolicy
from .runner import AsyncErrorRunner, AsyncOperationRunner, RunnerConfig
from .scheduler import LoopScheduler, Scheduler

logger = get_core_logger()


@dataclass
class OperationContext:
    """Shared, injectable instances for one application session."""

    settings: Settings = field(default_factory=Settings)
    scheduler: Scheduler = field(default_factory=LoopScheduler)
    cache: Optional[BoundedCache] = None
    deduplicator: Optional[RequestDeduplicator] = None
    loading_registry: LoadingRegistry = field(default_factory=LoadingRegistry)

    def __post_init__(self):
        if self.cache is None:
            self.cache = BoundedCache(
                CacheConfig(max_size=self.settings.cache.max_size)
            )
        if self.deduplicator is None:
            self.deduplicator = RequestDeduplicator(
                DedupConfig(
                    max_retries=self.settings.dedup.max_retries,
                    retry_delay=self.settings.dedup.retry_delay,
                ),
                scheduler=self.scheduler,
            )

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        scheduler: Optional[Scheduler] = None,
        configure_logs: bool = False,
    ) -> "OperationContext":
        """Build a context; optionally apply the logging settings too."""
        settings = settings or get_settings()
        if configure_logs:
            configure_logging(
                log_dir=Path(settings.logging.log_dir) if settings.logging.log_dir else None,
                log_level=settings.logging.level,
                json_output=settings.logging.json_output,
            )

        ctx = cls(settings=settings, scheduler=scheduler or LoopScheduler())
        logger.info(
            "operation_context_created",
            cache_max_size=settings.cache.max_size,
            dedup_max_retries=settings.dedup.max_retries,
            presets=sorted(settings.runner_presets),
        )
        return ctx

    def runner_config(self, preset: str = "default", **overrides: Any) -> RunnerConfig:
        """Runner options from a named preset, with per-call overrides."""
        if preset not in self.settings.runner_presets:
            raise KeyError(f"Unknown runner preset: '{preset}'")
        values = self.settings.runner_presets[preset].model_dump()
        values.update(overrides)
        return RunnerConfig(**values)

    def create_runner(
        self, preset: str = "default", name: Optional[str] = None, **options: Any
    ) -> AsyncOperationRunner:
        """
        Runner wired to this context's scheduler and loading registry.

        Hook options (on_success, on_error, on_finally) go to the runner;
        anything else overrides preset values.
        """
        hooks = {
            key: options.pop(key)
            for key in ("on_success", "on_error", "on_finally")
            if key in options
        }
        return AsyncOperationRunner(
            self.runner_config(preset, **options),
            scheduler=self.scheduler,
            loading_registry=self.loading_registry,
            name=name or preset,
            **hooks,
        )

    def create_error_runner(
        self, func, name: Optional[str] = None, **hooks: Any
    ) -> AsyncErrorRunner:
        """Error-capturing runner for ``func``; no timeout, no retry budget."""
        return AsyncErrorRunner(
            func,
            scheduler=self.scheduler,
            loading_registry=self.loading_registry,
            name=name or getattr(func, "__name__", None),
            **hooks,
        )

    def create_sequential(self, preset: str = "default") -> SequentialRunner:
        return SequentialRunner(self.runner_config(preset), scheduler=self.scheduler)

    def create_parallel(
        self, preset: str = "default", max_concurrency: Optional[int] = None
    ) -> ParallelRunner:
        return ParallelRunner(
            self.runner_config(preset),
            scheduler=self.scheduler,
            max_concurrency=max_concurrency,
        )

    def create_group(self, keys, preset: str = "default") -> RunnerGroup:
        return RunnerGroup(
            keys,
            self.runner_config(preset),
            scheduler=self.scheduler,
            loading_registry=self.loading_registry,
        )

    def create_batch_processor(
        self,
        processor: BatchFn,
        batch_size: Optional[int] = None,
        flush_interval: Optional[float] = None,
    ) -> BatchProcessor:
        config = BatchConfig(
            batch_size=(
                self.settings.batch.batch_size if batch_size is None else batch_size
            ),
            flush_interval=(
                self.settings.batch.flush_interval
                if flush_interval is None
                else flush_interval
            ),
        )
        return BatchProcessor(processor, config, scheduler=self.scheduler)

    def create_retry_handler(self, operation, **callbacks: Any) -> RetryHandler:
        retry = self.settings.retry
        policy = RetryPolicy(
            max_retries=retry.max_retries,
            base_delay=retry.base_delay,
            max_delay=retry.max_delay,
            multiplier=retry.multiplier,
        )
        return RetryHandler(operation, policy, scheduler=self.scheduler, **callbacks)

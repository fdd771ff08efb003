"""
opstate: loading, retry, de-duplication and batching state for async operations.

Public API:
- AsyncOperationRunner / RunnerConfig / execute_operation: one tracked operation
- AsyncErrorRunner: tracked operation that stores errors instead of raising
- RequestDeduplicator: one in-flight call per key
- BoundedCache: LRU memory cache
- BatchProcessor: size/time bounded batching
- SequentialRunner / ParallelRunner / RunnerGroup: queues of operations
- OperationContext: the shared instances for a session
"""

from .core.batch import BatchConfig, BatchProcessor
from .core.cache import MISSING, BoundedCache, CacheConfig
from .core.config import Settings, get_settings, reload_settings
from .core.context import OperationContext
from .core.dedup import DedupConfig, RequestDeduplicator
from .core.exceptions import (
    BatchProcessingError,
    ConfigurationError,
    OperationTimeoutError,
    OpStateError,
)
from .core.loading_registry import LoadingRegistry
from .core.orchestration import ParallelRunner, RunnerGroup, SequentialRunner
from .core.retry import (
    BackoffStrategy,
    RetryContext,
    RetryHandler,
    RetryPolicy,
    execute_with_retry,
)
from .core.runner import (
    AsyncErrorRunner,
    AsyncOperationRunner,
    RunnerConfig,
    execute_operation,
)
from .core.scheduler import LoopScheduler, Scheduler, VirtualScheduler
from .core.state import OperationState, StateStore
from .core.throttling import Debouncer, Throttler, measure_async_performance

__version__ = "1.0.0"

__all__ = [
    "AsyncErrorRunner",
    "AsyncOperationRunner",
    "BackoffStrategy",
    "BatchConfig",
    "BatchProcessingError",
    "BatchProcessor",
    "BoundedCache",
    "CacheConfig",
    "ConfigurationError",
    "Debouncer",
    "DedupConfig",
    "LoadingRegistry",
    "LoopScheduler",
    "MISSING",
    "OpStateError",
    "OperationContext",
    "OperationState",
    "OperationTimeoutError",
    "ParallelRunner",
    "RequestDeduplicator",
    "RetryContext",
    "RetryHandler",
    "RetryPolicy",
    "RunnerConfig",
    "RunnerGroup",
    "Scheduler",
    "SequentialRunner",
    "Settings",
    "StateStore",
    "Throttler",
    "VirtualScheduler",
    "execute_operation",
    "execute_with_retry",
    "get_settings",
    "measure_async_performance",
    "reload_settings",
]

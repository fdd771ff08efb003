"""
Structured Logging Configuration for opstate

- Every state transition is logged as a named event with keyword fields
- structlog renders each event, stdlib handlers deliver it (stdout, log file)
- Metadata enrichment through contextvars (LogContext)
"""

import sys
import time
import logging
from pathlib import Path
from datetime import datetime
from typing import Callable, List, Optional
from functools import lru_cache

import structlog

ROOT_LOGGER_NAME = "opstate"

# Handlers installed by the last configure_logging() call
_installed_handlers: List[logging.Handler] = []


def _reset_handlers(stdlib_logger: logging.Logger) -> None:
    for handler in _installed_handlers:
        stdlib_logger.removeHandler(handler)
        handler.close()
    _installed_handlers.clear()


def configure_logging(
    log_dir: Optional[Path] = None,
    log_level: str = "INFO",
    json_output: bool = True
) -> Optional[Path]:
    """
    Configure structured logging for the library.

    Events from every ``opstate.*`` logger go through the stdlib logger
    named ``opstate``, which writes to stdout and, when ``log_dir`` is set,
    to a dated log file. Calling this again replaces the previous handlers.

    Args:
        log_dir: Directory for log files (if None, logs to stdout only)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable

    Returns:
        Path of the log file, or None when logging to stdout only
    """
    level = getattr(logging, log_level.upper())

    stdlib_logger = logging.getLogger(ROOT_LOGGER_NAME)
    _reset_handlers(stdlib_logger)
    stdlib_logger.setLevel(level)
    stdlib_logger.propagate = False

    formatter = logging.Formatter("%(message)s")
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    _installed_handlers.append(stream_handler)

    log_file = None
    if log_dir:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"opstate_{datetime.now().strftime('%Y%m%d')}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        _installed_handlers.append(file_handler)

    for handler in _installed_handlers:
        stdlib_logger.addHandler(handler)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if json_output:
        final_processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ]
    else:
        final_processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=False)
        ]

    structlog.configure(
        processors=final_processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return log_file


@lru_cache(maxsize=None)
def get_logger(name: str = ROOT_LOGGER_NAME) -> structlog.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name; use the ``opstate.`` prefix so configure_logging
            handlers receive its events

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


class LogContext:
    """
    Context manager for adding temporary logging context.

    Usage:
        with LogContext(dedup_key="property:42"):
            logger.info("request_started")
            # Every log inside this block carries dedup_key
    """

    def __init__(self, **kwargs):
        self.context = kwargs

    def __enter__(self):
        structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        structlog.contextvars.unbind_contextvars(*self.context.keys())
        return False


class OperationLogger:
    """
    Logs ``<operation>_started`` on entry and ``<operation>_completed`` or
    ``<operation>_failed`` on exit, with ``duration_ms`` measured on ``clock``.
    Exceptions are never suppressed.
    """

    def __init__(
        self,
        logger: structlog.BoundLogger,
        operation: str,
        clock: Callable[[], float],
        context: dict,
    ):
        self.logger = logger
        self.operation = operation
        self.clock = clock
        self.context = context
        self.start_time: Optional[float] = None

    def __enter__(self):
        self.start_time = self.clock()
        self.logger.info(
            f"{self.operation}_started", operation=self.operation, **self.context
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = round((self.clock() - self.start_time) * 1000, 2)

        if exc_type is None:
            self.logger.info(
                f"{self.operation}_completed",
                operation=self.operation,
                duration_ms=duration_ms,
                status="success",
                **self.context
            )
        else:
            self.logger.error(
                f"{self.operation}_failed",
                operation=self.operation,
                duration_ms=duration_ms,
                status="error",
                error_type=exc_type.__name__,
                error_message=str(exc_val),
                **self.context
            )
        return False


def log_operation(
    logger: structlog.BoundLogger,
    operation: str,
    clock: Optional[Callable[[], float]] = None,
    **context
) -> OperationLogger:
    """
    Context manager logging operation start/end with duration.

    Pass a scheduler's ``now`` as ``clock`` so durations use the same time
    source as the operations being logged. Defaults to ``time.monotonic``.
    """
    return OperationLogger(logger, operation, clock or time.monotonic, context)


def get_core_logger() -> structlog.BoundLogger:
    """Logger for core components."""
    return get_logger("opstate.core")

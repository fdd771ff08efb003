"""
Custom Exceptions for opstate

- Specific exception types per failure mode
- Meaningful error context through ``details``
- Errors raised by wrapped operations are never wrapped; these types only
  cover failures the library itself synthesizes
"""

from typing import Optional, Dict, Any


class OpStateError(Exception):
    """Base exception for all opstate errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        base = self.message
        if self.details:
            base += f" | Details: {self.details}"
        if self.cause:
            base += f" | Caused by: {type(self.cause).__name__}: {self.cause}"
        return base


class OperationTimeoutError(OpStateError, TimeoutError):
    """Raised when an operation exceeds its deadline."""

    def __init__(self, timeout_seconds: float, operation: Optional[str] = None):
        details: Dict[str, Any] = {"timeout_seconds": timeout_seconds}
        if operation:
            details["operation"] = operation

        super().__init__(
            f"Operation timed out after {timeout_seconds}s",
            details=details,
        )
        self.timeout_seconds = timeout_seconds


class BatchProcessingError(OpStateError):
    """
    Wraps a failure raised by a batch processor.

    Logged and recorded by BatchProcessor, never raised to callers of add().
    """

    def __init__(self, batch_size: int, cause: Optional[BaseException] = None):
        super().__init__(
            f"Batch processing failed for {batch_size} item(s)",
            details={"batch_size": batch_size},
            cause=cause,
        )
        self.batch_size = batch_size


class ConfigurationError(OpStateError):
    """Raised when a component is constructed with invalid settings."""

    def __init__(self, field: str, value: Any, reason: str):
        super().__init__(
            f"Invalid value for '{field}': {reason}",
            details={"field": field, "value": value},
        )

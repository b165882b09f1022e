"""
Execution contexts — separate WHAT (pure logic) from HOW (side effects).

A pipeline describes what happens and returns Result[T]; a context decides
how it runs (timing, logging, exception containment). The cleanup scheduler
wraps every job in a LoggingExecutionContext:

    ctx = LoggingExecutionContext(operation="PurgeExpired")
    result = ctx.execute(purge)
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Protocol, TypeVar, runtime_checkable

from railway.failure import ErrorCode, FailureDescription
from railway.result import Failure, Result

T = TypeVar("T")
logger = logging.getLogger("railway.execution")


# ──────────────────────── Protocol (Interface) ────────────────────────


@runtime_checkable
class ExecutionContext(Protocol):
    """Anything with execute(computation) -> Result."""

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        ...


# ──────────────────────── NoOp (Testing) ────────────────────────


class NoOpExecutionContext:
    """Passthrough execution context — runs the computation as-is."""

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        return computation()


# ──────────────────────── Logging ────────────────────────


class LoggingExecutionContext:
    """
    Execution context that logs entry, exit, duration, and result state.

    Exceptions escaping the computation are converted to SERVER_ERROR
    failures so a scheduled job can never kill its worker thread.
    """

    def __init__(
        self,
        inner: ExecutionContext | None = None,
        operation: str = "unknown",
        log_level: int = logging.INFO,
    ) -> None:
        self._inner = inner or NoOpExecutionContext()
        self._operation = operation
        self._log_level = log_level

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        logger.log(self._log_level, "[%s] Starting execution", self._operation)
        start = time.monotonic()

        try:
            result = self._inner.execute(computation)
        except Exception as e:
            elapsed = time.monotonic() - start
            logger.error(
                "[%s] Execution failed after %.3fs: %s",
                self._operation,
                elapsed,
                e,
            )
            return Failure(
                FailureDescription(
                    ErrorCode.SERVER_ERROR,
                    f"Execution failed: {e}",
                    e,
                )
            )

        elapsed = time.monotonic() - start
        if result.is_success():
            logger.log(self._log_level, "[%s] Completed in %.3fs: SUCCESS", self._operation, elapsed)
        else:
            logger.warning(
                "[%s] Completed in %.3fs: FAILURE %s",
                self._operation,
                elapsed,
                result.error().code.value,
            )
        return result


# ──────────────────────── Decorator Helper ────────────────────────


def with_context(ctx: ExecutionContext) -> Callable:
    """
    Decorator running a Result-returning function inside an execution context.

        @with_context(LoggingExecutionContext(operation="PurgeExpired"))
        def purge() -> Result[int]:
            ...
    """

    def decorator(fn: Callable[..., Result[T]]) -> Callable[..., Result[T]]:
        def wrapper(*args: Any, **kwargs: Any) -> Result[T]:
            return ctx.execute(lambda: fn(*args, **kwargs))
        wrapper.__name__ = fn.__name__
        wrapper.__doc__ = fn.__doc__
        return wrapper
    return decorator

"""
Railway-Oriented Programming for the pki-auth services.

Explicit, composable error handling — no exceptions across service boundaries.

    from railway import Result, ErrorCode

    def check_password(password: str) -> Result[str]:
        if len(password) < 8:
            return Result.failure(ErrorCode.INVALID_REQUEST, "password must be at least 8 characters")
        return Result.success(password)
"""

from railway.result import Result, Success, Failure
from railway.failure import ErrorCode, FailureDescription
from railway.execution import (
    ExecutionContext,
    NoOpExecutionContext,
    LoggingExecutionContext,
)
from railway.result_failures import ResultFailures
from railway.assertions import ResultAssertions

__all__ = [
    "Result",
    "Success",
    "Failure",
    "ErrorCode",
    "FailureDescription",
    "ExecutionContext",
    "NoOpExecutionContext",
    "LoggingExecutionContext",
    "ResultFailures",
    "ResultAssertions",
]

__version__ = "1.1.0"

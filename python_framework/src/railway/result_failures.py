"""
Convenience factory methods for the most frequent failures.

    from railway.result_failures import ResultFailures

    ResultFailures.invalid_request("password must be at least 8 characters")
    ResultFailures.not_found("Certificate", serial)
"""

from __future__ import annotations

from typing import TypeVar

from railway.failure import ErrorCode
from railway.result import Result

T = TypeVar("T")


class ResultFailures:
    """Factory methods for common failure types."""

    @staticmethod
    def invalid_request(message: str) -> Result:
        """Missing or malformed input."""
        return Result.failure(ErrorCode.INVALID_REQUEST, message)

    @staticmethod
    def not_found(resource_type: str, identifier: str) -> Result:
        return Result.failure(
            ErrorCode.NOT_FOUND,
            f"{resource_type} not found: {identifier}",
        )

    @staticmethod
    def conflict(message: str) -> Result:
        """State precondition violated (already initialized, already revoked)."""
        return Result.failure(ErrorCode.CONFLICT, message)

    @staticmethod
    def invalid_grant(message: str) -> Result:
        return Result.failure(ErrorCode.INVALID_GRANT, message)

    @staticmethod
    def unauthorized(message: str) -> Result:
        return Result.failure(ErrorCode.UNAUTHORIZED, message)

    @staticmethod
    def database_error(message: str, exception: BaseException | None = None) -> Result:
        return Result.failure(ErrorCode.DATABASE_ERROR, message, exception)

    @staticmethod
    def server_error(message: str, exception: BaseException | None = None) -> Result:
        """Unexpected failure; detail stays in the server log."""
        return Result.failure(ErrorCode.SERVER_ERROR, message, exception)

    @staticmethod
    def external_service_error(message: str, exception: BaseException | None = None) -> Result:
        return Result.failure(ErrorCode.EXTERNAL_SERVICE_ERROR, message, exception)

    @staticmethod
    def timeout_error(message: str, exception: BaseException | None = None) -> Result:
        return Result.failure(ErrorCode.TIMEOUT_ERROR, message, exception)

    @staticmethod
    def from_exception(message: str, exception: BaseException) -> Result:
        """
        Map a Python exception to the closest ErrorCode.

          - ValueError, TypeError, KeyError → INVALID_REQUEST
          - LookupError → NOT_FOUND
          - TimeoutError → TIMEOUT_ERROR
          - ConnectionError → EXTERNAL_SERVICE_ERROR
          - Everything else → SERVER_ERROR
        """
        return Result.failure(_map_exception_to_code(exception), message, exception)


def _map_exception_to_code(exception: BaseException) -> ErrorCode:
    match exception:
        case ValueError() | TypeError() | KeyError():
            return ErrorCode.INVALID_REQUEST
        case LookupError():
            return ErrorCode.NOT_FOUND
        case TimeoutError():
            return ErrorCode.TIMEOUT_ERROR
        case ConnectionError():
            return ErrorCode.EXTERNAL_SERVICE_ERROR
        case _:
            return ErrorCode.SERVER_ERROR

"""
HTTP integration — ErrorCode→HTTP status mapping and response builders.

Failure bodies use the OAuth2 error shape for every endpoint so clients
only need one parser:

    {"error": "invalid_grant", "error_description": "Invalid PKCE verifier"}

Server-side kinds (SERVER_ERROR, DATABASE_ERROR, CONFIGURATION_ERROR) get a
generic description; their detail belongs in the server log only.

Usage (FastAPI):
    from railway.http_support import build_fastapi_response
    return build_fastapi_response(result, success_status=201)
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Callable, TypeVar

from fastapi.responses import JSONResponse

from railway.failure import ErrorCode, FailureDescription
from railway.result import Result

T = TypeVar("T")

GENERIC_SERVER_MESSAGE = "Internal server error"


# ──────────────────────── Error Code → HTTP Status Mapping ────────────────────────


class HttpStatusMapper:
    """Maps ErrorCode values to HTTP status codes and OAuth2 error strings."""

    _CODE_TO_STATUS: dict[ErrorCode, int] = {
        # Client errors (4xx)
        ErrorCode.INVALID_REQUEST: 400,
        ErrorCode.NOT_FOUND: 404,
        ErrorCode.INVALID_CHALLENGE: 400,
        ErrorCode.CHALLENGE_EXPIRED: 400,
        ErrorCode.INVALID_SIGNATURE: 401,
        ErrorCode.CERTIFICATE_NOT_ACTIVE: 400,
        ErrorCode.INVALID_CLIENT: 401,
        ErrorCode.INVALID_CLIENT_CREDENTIALS: 401,
        ErrorCode.INVALID_GRANT: 400,
        ErrorCode.UNSUPPORTED_GRANT_TYPE: 400,
        ErrorCode.UNAUTHORIZED: 401,
        ErrorCode.CONFLICT: 409,
        # Server errors (5xx)
        ErrorCode.NOT_INITIALIZED: 500,
        ErrorCode.SERVER_ERROR: 500,
        ErrorCode.DATABASE_ERROR: 500,
        ErrorCode.CONFIGURATION_ERROR: 500,
        ErrorCode.EXTERNAL_SERVICE_ERROR: 502,
        ErrorCode.TIMEOUT_ERROR: 504,
    }

    _CODE_TO_OAUTH_ERROR: dict[ErrorCode, str] = {
        ErrorCode.INVALID_REQUEST: "invalid_request",
        ErrorCode.INVALID_CLIENT: "invalid_client",
        ErrorCode.INVALID_CLIENT_CREDENTIALS: "invalid_client",
        ErrorCode.INVALID_GRANT: "invalid_grant",
        ErrorCode.UNSUPPORTED_GRANT_TYPE: "unsupported_grant_type",
        ErrorCode.UNAUTHORIZED: "invalid_token",
        ErrorCode.SERVER_ERROR: "server_error",
        ErrorCode.DATABASE_ERROR: "server_error",
        ErrorCode.CONFIGURATION_ERROR: "server_error",
    }

    @classmethod
    def map_error_code(cls, code: ErrorCode) -> int:
        return cls._CODE_TO_STATUS.get(code, 500)

    @classmethod
    def map_failure(cls, failure: FailureDescription) -> int:
        return cls.map_error_code(failure.code)

    @classmethod
    def error_string(cls, code: ErrorCode) -> str:
        """OAuth2 error string, or the snake-cased kind for non-OAuth kinds."""
        return cls._CODE_TO_OAUTH_ERROR.get(code, code.value.lower())


# ──────────────────────── Error Response DTO ────────────────────────


@dataclass(frozen=True, slots=True)
class ErrorResponse:
    """
    Standardized error response body.

        {
            "error": "invalid_challenge",
            "error_description": "Invalid challenge",
            "timestamp": "2026-02-17T10:30:00+00:00"
        }
    """

    error: str
    error_description: str
    timestamp: str

    @staticmethod
    def from_failure(failure: FailureDescription) -> ErrorResponse:
        description = GENERIC_SERVER_MESSAGE if failure.is_server_side() else failure.message
        return ErrorResponse(
            error=HttpStatusMapper.error_string(failure.code),
            error_description=description,
            timestamp=failure.timestamp.isoformat(),
        )

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


# ──────────────────────── Generic Response Builder ────────────────────────


def build_response(
    result: Result[T],
    success_status: int = 200,
    serializer: Callable[[T], Any] | None = None,
) -> tuple[Any, int]:
    """
    Build a (body, status_code) tuple from a Result.

        body, status = build_response(result, success_status=201, serializer=to_json)
    """
    return result.either(
        on_success=lambda value: (
            serializer(value) if serializer is not None else value,
            success_status,
        ),
        on_failure=lambda error: (
            ErrorResponse.from_failure(error).to_dict(),
            HttpStatusMapper.map_failure(error),
        ),
    )


# ──────────────────────── FastAPI Adapter ────────────────────────


def build_fastapi_response(
    result: Result[T],
    success_status: int = 200,
    serializer: Callable[[T], Any] | None = None,
) -> JSONResponse:
    """
    Build a FastAPI JSONResponse from a Result.

        @router.post("/certificates/revoke")
        def revoke(body: RevokeCertificateRequest):
            return build_fastapi_response(issuer.revoke(body.serial_number, body.reason))
    """
    body, status = build_response(result, success_status, serializer)
    return JSONResponse(content=body, status_code=status)

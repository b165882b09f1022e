"""
Failure description — structured error information for the failure track.

The ErrorCode taxonomy is the one the certificate login service speaks:
every kind maps to exactly one HTTP status (see railway.http_support) and,
for the OAuth endpoints, to an RFC 6749 error string.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique
from typing import Optional


@unique
class ErrorCode(Enum):
    """
    Error kinds carried on the failure track.

    - Client errors (4xx): INVALID_REQUEST, NOT_FOUND, INVALID_CHALLENGE,
      CHALLENGE_EXPIRED, INVALID_SIGNATURE, CERTIFICATE_NOT_ACTIVE,
      INVALID_CLIENT, INVALID_CLIENT_CREDENTIALS, INVALID_GRANT,
      UNSUPPORTED_GRANT_TYPE, UNAUTHORIZED, CONFLICT
    - Server errors (5xx): NOT_INITIALIZED, SERVER_ERROR, DATABASE_ERROR,
      CONFIGURATION_ERROR, EXTERNAL_SERVICE_ERROR, TIMEOUT_ERROR
    """

    # --- Client-side errors (4xx HTTP range) ---
    INVALID_REQUEST = "INVALID_REQUEST"
    """Missing or malformed required fields (→ 400)."""

    NOT_FOUND = "NOT_FOUND"
    """Certificate, user or client absent (→ 404)."""

    INVALID_CHALLENGE = "INVALID_CHALLENGE"
    """Challenge unknown or already consumed (→ 400)."""

    CHALLENGE_EXPIRED = "CHALLENGE_EXPIRED"
    """Challenge past its expiry (→ 400)."""

    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    """Signature does not verify against the certificate key (→ 401)."""

    CERTIFICATE_NOT_ACTIVE = "CERTIFICATE_NOT_ACTIVE"
    """Certificate is expired, revoked or renewed (→ 400)."""

    INVALID_CLIENT = "INVALID_CLIENT"
    """Unknown OAuth client or unregistered redirect URI (→ 401)."""

    INVALID_CLIENT_CREDENTIALS = "INVALID_CLIENT_CREDENTIALS"
    """Client secret mismatch (→ 401)."""

    INVALID_GRANT = "INVALID_GRANT"
    """Expired, consumed or mismatched code, or PKCE failure (→ 400)."""

    UNSUPPORTED_GRANT_TYPE = "UNSUPPORTED_GRANT_TYPE"
    """Grant type other than the supported ones (→ 400)."""

    UNAUTHORIZED = "UNAUTHORIZED"
    """Missing or wrong admin secret / bearer token (→ 401)."""

    CONFLICT = "CONFLICT"
    """State precondition violated: already initialized, already revoked (→ 409)."""

    # --- Server-side errors (5xx HTTP range) ---
    NOT_INITIALIZED = "NOT_INITIALIZED"
    """CA hierarchy has not been created yet (→ 500)."""

    SERVER_ERROR = "SERVER_ERROR"
    """Unexpected failure, e.g. a crypto library fault (→ 500)."""

    DATABASE_ERROR = "DATABASE_ERROR"
    """Store connectivity or query failure (→ 500)."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    """System misconfiguration (→ 500)."""

    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    """Outbound HTTP call failed (→ 502)."""

    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    """Outbound call exceeded its time budget (→ 504)."""


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor carrying error code, message, optional exception, and timestamp.

    >>> desc = FailureDescription(ErrorCode.INVALID_REQUEST, "password is required")
    >>> desc.code
    <ErrorCode.INVALID_REQUEST: 'INVALID_REQUEST'>
    >>> desc.message
    'password is required'
    """

    code: ErrorCode
    message: str
    exception: Optional[BaseException] = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @staticmethod
    def create(
        code: ErrorCode,
        message: str,
        exception: Optional[BaseException] = None,
    ) -> FailureDescription:
        return FailureDescription(code=code, message=message, exception=exception)

    def is_server_side(self) -> bool:
        """True for the kinds whose message must not reach the caller."""
        return self.code in _SERVER_SIDE

    def full_stack_trace(self) -> str:
        """Message followed by the formatted exception chain, if any."""
        if self.exception is None:
            return self.message
        tb = "".join(
            traceback.format_exception(type(self.exception), self.exception, self.exception.__traceback__)
        )
        return f"{self.message}\n{tb}"


_SERVER_SIDE = frozenset(
    {
        ErrorCode.SERVER_ERROR,
        ErrorCode.DATABASE_ERROR,
        ErrorCode.CONFIGURATION_ERROR,
    }
)

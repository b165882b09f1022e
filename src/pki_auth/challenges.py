"""
One-time login challenges.

A challenge is 32 random bytes in URL-safe base64 (no padding), valid for a
configurable TTL (default 300 s). It is single use: consume() deletes the
record atomically through ChallengeRepository.take, so of two concurrent
logins presenting the same challenge exactly one proceeds. An expired
challenge is deleted when it is seen.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog
from railway import ErrorCode
from railway.failure import FailureDescription
from railway.result import Result

from pki_auth.domain.models import Challenge, utc_now
from pki_auth.domain.ports import ChallengeRepository

log = structlog.get_logger()

CHALLENGE_BYTES = 32
DEFAULT_TTL_SECONDS = 300


class ChallengeService:
    def __init__(
        self,
        repository: ChallengeRepository,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    def issue(self) -> Result[Challenge]:
        now = self._clock()
        challenge = Challenge(
            value=secrets.token_urlsafe(CHALLENGE_BYTES),
            created_at=now,
            expires_at=now + self._ttl,
        )
        return self._repository.add(challenge).peek(
            lambda c: log.debug("challenge.issued", expires_at=c.expires_at.isoformat())
        )

    def peek(self, value: str) -> Result[Challenge]:
        """
        Look a challenge up without consuming it.

        Missing → INVALID_CHALLENGE. Expired → CHALLENGE_EXPIRED, and the
        record is deleted.
        """
        return (
            self._repository.get(value)
            .map_failure(_missing_as_invalid)
            .flat_map(self._reject_expired)
        )

    def consume(self, value: str) -> Result[Challenge]:
        """Atomically delete and return a live challenge."""
        return (
            self._repository.take(value)
            .map_failure(_missing_as_invalid)
            .ensure(lambda c: not c.is_expired(self._clock()), ErrorCode.CHALLENGE_EXPIRED, "Challenge expired")
            .peek(lambda _: log.debug("challenge.consumed"))
        )

    def purge_expired(self) -> Result[int]:
        return self._repository.purge_expired(self._clock())

    def _reject_expired(self, challenge: Challenge) -> Result[Challenge]:
        if not challenge.is_expired(self._clock()):
            return Result.success(challenge)
        self._repository.take(challenge.value)
        log.info("challenge.expired")
        return Result.failure(ErrorCode.CHALLENGE_EXPIRED, "Challenge expired")


def _missing_as_invalid(failure: FailureDescription) -> FailureDescription:
    if failure.code is ErrorCode.NOT_FOUND:
        return FailureDescription(code=ErrorCode.INVALID_CHALLENGE, message="Invalid challenge")
    return failure

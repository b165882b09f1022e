"""
Audit trail service.

Every security-relevant action is appended to the AuditTrail port and echoed
as a structlog event (audit.<action>). Writing the audit entry is
best-effort: a storage failure is logged as audit.write_failed and the
audited operation still completes.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

import structlog
from railway import ErrorCode
from railway.result import Result

from pki_auth.domain.models import AuditAction, AuditEntry, utc_now
from pki_auth.domain.ports import AuditTrail

log = structlog.get_logger()


class AuditService:
    def __init__(self, trail: AuditTrail, clock: Callable[[], datetime] = utc_now) -> None:
        self._trail = trail
        self._clock = clock

    def record(
        self,
        action: AuditAction,
        user_id: str | None = None,
        client_id: str | None = None,
        ip_address: str | None = None,
        **details: Any,
    ) -> Result[AuditEntry]:
        entry = AuditEntry(
            action=action,
            details=details,
            user_id=user_id,
            client_id=client_id,
            ip_address=ip_address,
            created_at=self._clock(),
        )
        log.info(f"audit.{action.value.lower()}", user_id=user_id, client_id=client_id, **details)
        return self._trail.append(entry).peek_failure(
            lambda failure: log.error("audit.write_failed", action=action.value, failure=str(failure))
        )

    def recent(self, limit: int = 100, offset: int = 0) -> Result[list[AuditEntry]]:
        return (
            Result.success(limit)
            .ensure(lambda n: 1 <= n <= 1000, ErrorCode.INVALID_REQUEST, "limit must be between 1 and 1000")
            .ensure(lambda _: offset >= 0, ErrorCode.INVALID_REQUEST, "offset must not be negative")
            .flat_map(lambda n: self._trail.recent(n, offset))
        )

"""
Certificate verification against the local CA hierarchy.

All checks run and their findings are collected, so a caller sees every
reason a certificate is unacceptable rather than only the first:

  1. validity window (not yet valid / expired)
  2. chain: leaf signed by the intermediate, intermediate signed by the root
  3. revocation list entry
  4. locally recorded status (REVOKED, RENEWED)

Only an unparseable PEM or a missing CA fails the call itself. Every call,
failed or not, leaves a CERTIFICATE_VERIFIED audit entry.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

import structlog
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from railway import ErrorCode
from railway.result import Result

from pki_auth.audit import AuditService
from pki_auth.authority import CertificateAuthorityService, TrustAnchors
from pki_auth.domain.models import AuditAction, CertificateStatus, VerificationReport, utc_now
from pki_auth.domain.ports import CertificateRepository
from pki_auth.keys import load_certificate, serial_hex

log = structlog.get_logger()


class CertificateVerifier:
    def __init__(
        self,
        authority: CertificateAuthorityService,
        certificates: CertificateRepository,
        audit: AuditService,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._authority = authority
        self._certificates = certificates
        self._audit = audit
        self._clock = clock

    def verify(self, certificate_pem: str, ip_address: str | None = None) -> Result[VerificationReport]:
        parsed = Result.from_computation(
            lambda: load_certificate(certificate_pem),
            ErrorCode.INVALID_REQUEST,
            "certificatePem is not a valid PEM certificate",
        )
        return (
            parsed.flat_map(
                lambda leaf: self._authority.get_trusted_roots().flat_map(
                    lambda anchors: self._evaluate(leaf, anchors)
                )
            )
            .peek(
                lambda report: self._audit.record(
                    AuditAction.CERTIFICATE_VERIFIED,
                    ip_address=ip_address,
                    serial_number=report.serial_number,
                    valid=report.valid,
                    errors=list(report.errors),
                )
            )
            .peek_failure(
                lambda failure: self._audit.record(
                    AuditAction.CERTIFICATE_VERIFIED,
                    ip_address=ip_address,
                    serial_number=parsed.map(serial_hex).get_or_else(None),
                    valid=False,
                    error=failure.code.value,
                )
            )
        )

    def _evaluate(self, leaf: x509.Certificate, anchors: TrustAnchors) -> Result[VerificationReport]:
        serial_number = serial_hex(leaf)
        errors = [*self._time_errors(leaf), *self._chain_errors(leaf, anchors)]

        revocation = self._certificates.find_revocation(serial_number)
        if revocation.is_success():
            errors.append(f"Certificate revoked: {revocation.value().reason}")
        elif revocation.error().code is not ErrorCode.NOT_FOUND:
            return Result.failure_from(revocation.error())

        stored = self._certificates.get(serial_number)
        if stored.is_success():
            status = stored.value().status
            if status is not CertificateStatus.ACTIVE and not (
                status is CertificateStatus.REVOKED and revocation.is_success()
            ):
                errors.append(f"Certificate status: {status.value}")
        elif stored.error().code is not ErrorCode.NOT_FOUND:
            return Result.failure_from(stored.error())

        report = VerificationReport(serial_number=serial_number, errors=tuple(errors))
        log.info("verifier.verified", serial_number=serial_number, valid=report.valid)
        return Result.success(report)

    def _time_errors(self, leaf: x509.Certificate) -> list[str]:
        now = self._clock()
        if now < leaf.not_valid_before_utc:
            return ["Certificate not yet valid"]
        if now > leaf.not_valid_after_utc:
            return ["Certificate expired"]
        return []

    @staticmethod
    def _chain_errors(leaf: x509.Certificate, anchors: TrustAnchors) -> list[str]:
        try:
            leaf.verify_directly_issued_by(anchors.intermediate)
            anchors.intermediate.verify_directly_issued_by(anchors.root)
        except (ValueError, TypeError, InvalidSignature):
            return ["Certificate chain verification failed"]
        return []

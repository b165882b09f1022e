"""
Certificate issuer — issue, renew and revoke end-entity certificates.

Issuance railway:

    validate input
      → signing CA (NOT_INITIALIZED when missing)
      → upsert the owning user
      → fresh key pair + certificate signed by the intermediate
      → store the certificate record (retry on serial collision)
      → PKCS#12 container with key, certificate and chain

The holder's private key and the container password are never stored: the
key only leaves this module inside the returned IssuedCertificate.

Status lookups (OCSP-style) and the revocation list are answered here too,
since they read the same certificate and revocation records.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from railway import ErrorCode
from railway.result import Result

from pki_auth.audit import AuditService
from pki_auth.authority import CertificateAuthorityService, SigningAuthority
from pki_auth.domain.encoding import encode_ascii_safe
from pki_auth.domain.models import (
    AuditAction,
    Certificate,
    CertificateStatus,
    CertificateStatusReport,
    IssuedCertificate,
    RevocationList,
    RevokedCertificateEntry,
    SubjectInfo,
    User,
    utc_now,
)
from pki_auth.domain.ports import CertificateRepository, UserRepository
from pki_auth.keys import (
    KeyPairFactory,
    add_years,
    certificate_to_pem,
    dn_string,
    private_key_to_pem,
    public_key_to_pem,
    serial_hex,
)

log = structlog.get_logger()

MIN_PASSWORD_LENGTH = 8
MAX_VALIDITY_YEARS = 10
MAX_COMMON_NAME_LENGTH = 64
MAX_SERIAL_ATTEMPTS = 3
DEFAULT_REVOCATION_REASON = "unspecified"
SUPERSEDED_REASON = "superseded"
STATUS_RESPONSE_LIFETIME = timedelta(hours=1)
CRL_LIFETIME = timedelta(days=7)
LEGACY_KDF_ROUNDS = 50000


@dataclass(frozen=True, slots=True)
class Identity:
    """Who a certificate is issued to."""

    common_name: str
    user_id: str
    email: str | None = None


class CertificateIssuer:
    def __init__(
        self,
        authority: CertificateAuthorityService,
        key_factory: KeyPairFactory,
        certificates: CertificateRepository,
        users: UserRepository,
        audit: AuditService,
        organization: str,
        country: str,
        legacy_pkcs12: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._authority = authority
        self._key_factory = key_factory
        self._certificates = certificates
        self._users = users
        self._audit = audit
        self._organization = organization
        self._country = country
        self._legacy_pkcs12 = legacy_pkcs12
        self._clock = clock

    # ──────────────────────── Issue ────────────────────────

    def issue(
        self,
        identity: Identity,
        password: str,
        validity_years: int = 1,
        ip_address: str | None = None,
    ) -> Result[IssuedCertificate]:
        return (
            _validate_identity(identity)
            .flat_map(lambda _: _validate_container(password, validity_years))
            .flat_map(lambda _: self._authority.get_signing_ca())
            .flat_map(lambda ca: self._fits_signing_ca(ca, validity_years))
            .flat_map(
                lambda ca: self._users.upsert(
                    User(
                        id=identity.user_id,
                        name=identity.common_name,
                        email=identity.email,
                        created_at=self._clock(),
                    )
                ).map(lambda _: ca)
            )
            .flat_map(lambda ca: self._issue_new(identity, password, validity_years, ca))
            .peek(
                lambda issued: self._audit.record(
                    AuditAction.CERTIFICATE_ISSUED,
                    user_id=identity.user_id,
                    ip_address=ip_address,
                    serial_number=issued.serial_number,
                    subject_dn=issued.subject_dn,
                )
            )
            .peek(lambda issued: log.info("issuer.issued", serial_number=issued.serial_number))
        )

    def _fits_signing_ca(self, ca: SigningAuthority, validity_years: int) -> Result[SigningAuthority]:
        not_after = add_years(self._clock().replace(microsecond=0), validity_years)
        if not_after > ca.certificate.not_valid_after_utc:
            return Result.failure(ErrorCode.INVALID_REQUEST, "validityYears exceeds the signing CA lifetime")
        return Result.success(ca)

    def _issue_new(
        self,
        identity: Identity,
        password: str,
        validity_years: int,
        ca: SigningAuthority,
    ) -> Result[IssuedCertificate]:
        result: Result[IssuedCertificate] = Result.failure(ErrorCode.SERVER_ERROR, "Certificate was not issued")
        for attempt in range(1, MAX_SERIAL_ATTEMPTS + 1):
            result = Result.from_computation(
                lambda: self._build(identity, password, validity_years, ca),
                ErrorCode.SERVER_ERROR,
                "Failed to build certificate",
            ).flat_map(lambda issued: self._certificates.add(issued.certificate).map(lambda _: issued))
            if result.is_success() or result.error().code is not ErrorCode.CONFLICT:
                return result
            log.warning("issuer.serial_collision", attempt=attempt)
        return result

    def _build(
        self,
        identity: Identity,
        password: str,
        validity_years: int,
        ca: SigningAuthority,
    ) -> IssuedCertificate:
        public_key, private_key = self._key_factory.generate_key_pair()
        subject = SubjectInfo(
            common_name=identity.common_name,
            organization=self._organization,
            country=self._country,
            email=identity.email,
        )
        certificate = self._key_factory.build_certificate(subject, ca.signer, public_key, validity_years)
        certificate_pem = certificate_to_pem(certificate)
        record = Certificate(
            serial_number=serial_hex(certificate),
            subject_dn=dn_string(certificate.subject),
            issuer_dn=dn_string(certificate.issuer),
            common_name=identity.common_name,
            not_before=certificate.not_valid_before_utc,
            not_after=certificate.not_valid_after_utc,
            public_key_pem=public_key_to_pem(public_key),
            certificate_pem=certificate_pem,
            owner_user_id=identity.user_id,
            email=identity.email,
            signature_hash_algorithm=_hash_name(certificate),
            created_at=self._clock(),
        )
        container = pkcs12.serialize_key_and_certificates(
            name=identity.common_name.encode("utf-8"),
            key=private_key,
            cert=certificate,
            cas=[ca.certificate, ca.root_certificate],
            encryption_algorithm=self._container_encryption(password),
        )
        return IssuedCertificate(
            certificate=record,
            certificate_pem=certificate_pem,
            chain_pems=ca.chain_pems,
            private_key_pem=private_key_to_pem(private_key),
            transport_container=container,
        )

    def _container_encryption(self, password: str) -> serialization.KeySerializationEncryption:
        secret = password.encode("utf-8")
        if not self._legacy_pkcs12:
            return serialization.BestAvailableEncryption(secret)
        # 3DES/SHA1 for importers that cannot read AES-based PKCS#12
        return (
            serialization.PrivateFormat.PKCS12.encryption_builder()
            .kdf_rounds(LEGACY_KDF_ROUNDS)
            .key_cert_algorithm(pkcs12.PBES.PBESv1SHA1And3KeyTripleDESCBC)
            .hmac_hash(hashes.SHA1())
            .build(secret)
        )

    # ──────────────────────── Renew ────────────────────────

    def renew(
        self,
        serial_number: str,
        password: str,
        validity_years: int = 1,
        ip_address: str | None = None,
    ) -> Result[IssuedCertificate]:
        """
        Issue a replacement for an existing certificate and mark the old one RENEWED.

        REVOKED and already RENEWED certificates cannot be renewed. If another
        request retires the old certificate first, the replacement issued here
        is revoked again and the conflict is returned.
        """
        return (
            _validate_container(password, validity_years)
            .flat_map(lambda _: self._certificates.get(serial_number))
            .flat_map(self._require_renewable)
            .flat_map(
                lambda old: self._authority.get_signing_ca()
                .flat_map(lambda ca: self._fits_signing_ca(ca, validity_years))
                .flat_map(
                    lambda ca: self._issue_new(
                        Identity(old.common_name, old.owner_user_id, old.email),
                        password,
                        validity_years,
                        ca,
                    )
                )
                .flat_map(lambda issued: self._retire(old, issued))
                .peek(
                    lambda issued: self._audit.record(
                        AuditAction.CERTIFICATE_RENEWED,
                        user_id=old.owner_user_id,
                        ip_address=ip_address,
                        old_serial_number=old.serial_number,
                        new_serial_number=issued.serial_number,
                    )
                )
            )
            .peek(lambda issued: log.info("issuer.renewed", old=serial_number, new=issued.serial_number))
        )

    def _require_renewable(self, certificate: Certificate) -> Result[Certificate]:
        if certificate.status in (CertificateStatus.REVOKED, CertificateStatus.RENEWED):
            return Result.failure(
                ErrorCode.CERTIFICATE_NOT_ACTIVE,
                f"Cannot renew a {certificate.status.value.lower()} certificate",
            )
        revocation = self._certificates.find_revocation(certificate.serial_number)
        if revocation.is_success():
            return Result.failure(ErrorCode.CERTIFICATE_NOT_ACTIVE, "Cannot renew a revoked certificate")
        if revocation.error().code is not ErrorCode.NOT_FOUND:
            return Result.failure_from(revocation.error())
        return Result.success(certificate)

    def _retire(self, old: Certificate, issued: IssuedCertificate) -> Result[IssuedCertificate]:
        marked = self._certificates.mark_renewed(old.serial_number)
        if marked.is_success():
            return Result.success(issued)
        self._certificates.revoke(issued.serial_number, SUPERSEDED_REASON, self._clock())
        log.warning("issuer.renew_lost_race", serial_number=old.serial_number)
        return Result.failure_from(marked.error())

    # ──────────────────────── Revoke ────────────────────────

    def revoke(
        self,
        serial_number: str,
        reason: str | None = None,
        ip_address: str | None = None,
    ) -> Result[RevokedCertificateEntry]:
        if not serial_number:
            return Result.failure(ErrorCode.INVALID_REQUEST, "serialNumber is required")
        return (
            self._certificates.revoke(serial_number, reason or DEFAULT_REVOCATION_REASON, self._clock())
            .peek(
                lambda entry: self._audit.record(
                    AuditAction.CERTIFICATE_REVOKED,
                    ip_address=ip_address,
                    serial_number=entry.serial_number,
                    reason=entry.reason,
                )
            )
            .peek(lambda entry: log.info("issuer.revoked", serial_number=entry.serial_number))
        )

    # ──────────────────────── Status & listings ────────────────────────

    def status(self, serial_number: str, ip_address: str | None = None) -> Result[CertificateStatusReport]:
        """
        Simplified OCSP answer: good, revoked, expired, not_yet_valid,
        renewed or unknown. An unknown serial is a successful "unknown" answer.
        """
        now = self._clock()
        return (
            self._certificates.get(serial_number)
            .flat_map(lambda certificate: self._status_for(certificate, now))
            .recover_with(
                lambda failure: Result.success(
                    CertificateStatusReport(
                        serial_number=serial_number,
                        status="unknown",
                        this_update=now,
                        next_update=now + STATUS_RESPONSE_LIFETIME,
                    )
                )
                if failure.code is ErrorCode.NOT_FOUND
                else Result.failure_from(failure)
            )
            .peek(
                lambda report: self._audit.record(
                    AuditAction.OCSP_CHECK,
                    ip_address=ip_address,
                    serial_number=serial_number,
                    status=report.status,
                )
            )
        )

    def _status_for(self, certificate: Certificate, now: datetime) -> Result[CertificateStatusReport]:
        revocation = self._certificates.find_revocation(certificate.serial_number)
        if revocation.is_failure() and revocation.error().code is not ErrorCode.NOT_FOUND:
            return Result.failure_from(revocation.error())
        entry = revocation.get_or_else(None)

        if entry is not None:
            status = "revoked"
        elif now > certificate.not_after:
            status = "expired"
        elif now < certificate.not_before:
            status = "not_yet_valid"
        elif certificate.status is CertificateStatus.ACTIVE:
            status = "good"
        else:
            status = certificate.status.value.lower()

        return Result.success(
            CertificateStatusReport(
                serial_number=certificate.serial_number,
                status=status,
                this_update=now,
                next_update=now + STATUS_RESPONSE_LIFETIME,
                certificate=certificate,
                reason=entry.reason if entry else None,
                revoked_at=entry.revoked_at if entry else None,
            )
        )

    def revocation_list(self) -> Result[RevocationList]:
        now = self._clock()
        return Result.combine(
            self._authority.get_signing_ca(),
            self._certificates.list_revocations(),
            lambda ca, entries: RevocationList(
                issuer_dn=ca.subject_dn,
                this_update=now,
                next_update=now + CRL_LIFETIME,
                entries=tuple(entries),
            ),
        )

    def certificates_for(self, user_id: str) -> Result[list[tuple[Certificate, CertificateStatus]]]:
        """A user's certificates, newest first, each with its derived status."""
        now = self._clock()
        return self._certificates.list_for_user(user_id).map(
            lambda certificates: [(c, c.effective_status(now)) for c in certificates]
        )


def _validate_identity(identity: Identity) -> Result[Identity]:
    return (
        Result.success(identity)
        .ensure(lambda i: bool(i.common_name and i.common_name.strip()), ErrorCode.INVALID_REQUEST, "name is required")
        .ensure(
            lambda i: len(encode_ascii_safe(i.common_name)) <= MAX_COMMON_NAME_LENGTH,
            ErrorCode.INVALID_REQUEST,
            f"name must encode to at most {MAX_COMMON_NAME_LENGTH} characters",
        )
        .ensure(lambda i: bool(i.user_id), ErrorCode.INVALID_REQUEST, "userId is required")
    )


def _validate_container(password: str, validity_years: int) -> Result[str]:
    return (
        Result.success(password or "")
        .ensure(
            lambda p: len(p) >= MIN_PASSWORD_LENGTH,
            ErrorCode.INVALID_REQUEST,
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
        )
        .ensure(
            lambda _: 1 <= validity_years <= MAX_VALIDITY_YEARS,
            ErrorCode.INVALID_REQUEST,
            f"validityYears must be between 1 and {MAX_VALIDITY_YEARS}",
        )
    )


def _hash_name(certificate: x509.Certificate) -> str:
    algorithm = certificate.signature_hash_algorithm
    return algorithm.name if algorithm is not None else "sha256"

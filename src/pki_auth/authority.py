"""
Certificate authority store — the root + intermediate hierarchy.

The hierarchy is created exactly once. Initialization generates both key
pairs, signs the intermediate with the root key (pathlen:0) and hands the
pair to CaRepository.save_hierarchy, which refuses a second insert. That
storage constraint, not the fast-path check here, is what makes concurrent
first-boot initialization safe.

Parsed CA material (certificates, the intermediate's private key) is cached
after the first successful load and reused by issuance and verification.
The cache is dropped on initialize() and refresh().
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

import structlog
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa
from railway import ErrorCode
from railway.failure import FailureDescription
from railway.result import Result

from pki_auth.audit import AuditService
from pki_auth.domain.models import (
    AuditAction,
    CaLevel,
    CertificateAuthority,
    SubjectInfo,
    utc_now,
)
from pki_auth.domain.ports import CaRepository
from pki_auth.keys import (
    KeyPairFactory,
    SignerContext,
    certificate_to_pem,
    dn_string,
    load_certificate,
    load_private_key,
    private_key_to_pem,
    serial_hex,
)

log = structlog.get_logger()

NOT_INITIALIZED_MESSAGE = "CA not initialized"


@dataclass(frozen=True, slots=True)
class SigningAuthority:
    """The intermediate CA, parsed and ready to sign end-entity certificates."""

    certificate: x509.Certificate
    private_key: rsa.RSAPrivateKey = field(repr=False)
    root_certificate: x509.Certificate

    @property
    def signer(self) -> SignerContext:
        return SignerContext(private_key=self.private_key, certificate=self.certificate)

    @property
    def subject_dn(self) -> str:
        return dn_string(self.certificate.subject)

    @property
    def chain_pems(self) -> tuple[str, str]:
        """Issuing chain, nearest first: intermediate then root."""
        return certificate_to_pem(self.certificate), certificate_to_pem(self.root_certificate)


@dataclass(frozen=True, slots=True)
class TrustAnchors:
    root: x509.Certificate
    intermediate: x509.Certificate


class CertificateAuthorityService:
    def __init__(
        self,
        repository: CaRepository,
        key_factory: KeyPairFactory,
        audit: AuditService,
        key_passphrase: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._key_factory = key_factory
        self._audit = audit
        self._key_passphrase = key_passphrase
        self._clock = clock
        self._lock = threading.Lock()
        self._signing: SigningAuthority | None = None
        self._anchors: TrustAnchors | None = None

    # ──────────────────────── Initialization ────────────────────────

    def initialize(
        self,
        root_subject: SubjectInfo,
        intermediate_subject: SubjectInfo,
        root_validity_years: int = 10,
        intermediate_validity_years: int = 5,
        ip_address: str | None = None,
    ) -> Result[tuple[CertificateAuthority, CertificateAuthority]]:
        """
        Create and store the CA hierarchy.

        Fails with CONFLICT "CA already initialized" when a hierarchy exists,
        including when another instance wins a concurrent initialization.
        """
        return (
            self._ensure_uninitialized()
            .flat_map(
                lambda _: Result.from_computation(
                    lambda: self._build_hierarchy(
                        root_subject,
                        intermediate_subject,
                        root_validity_years,
                        intermediate_validity_years,
                    ),
                    ErrorCode.SERVER_ERROR,
                    "Failed to generate CA hierarchy",
                )
            )
            .flat_map(lambda pair: self._repository.save_hierarchy(*pair))
            .peek(lambda _: self.refresh())
            .peek(
                lambda pair: self._audit.record(
                    AuditAction.CA_INITIALIZED,
                    ip_address=ip_address,
                    root_serial=pair[0].serial_number,
                    intermediate_serial=pair[1].serial_number,
                )
            )
            .peek(lambda pair: log.info("authority.initialized", root=pair[0].subject_dn))
        )

    def _ensure_uninitialized(self) -> Result[bool]:
        existing = self._repository.load(CaLevel.ROOT)
        if existing.is_success():
            return Result.failure(ErrorCode.CONFLICT, "CA already initialized")
        if existing.error().code is ErrorCode.NOT_FOUND:
            return Result.success(True)
        return Result.failure_from(existing.error())

    def _build_hierarchy(
        self,
        root_subject: SubjectInfo,
        intermediate_subject: SubjectInfo,
        root_validity_years: int,
        intermediate_validity_years: int,
    ) -> tuple[CertificateAuthority, CertificateAuthority]:
        root_public, root_private = self._key_factory.generate_key_pair(is_ca=True)
        root_certificate = self._key_factory.build_certificate(
            root_subject,
            SignerContext(private_key=root_private),
            root_public,
            root_validity_years,
            is_ca=True,
        )
        intermediate_public, intermediate_private = self._key_factory.generate_key_pair(is_ca=True)
        intermediate_certificate = self._key_factory.build_certificate(
            intermediate_subject,
            SignerContext(private_key=root_private, certificate=root_certificate),
            intermediate_public,
            intermediate_validity_years,
            is_ca=True,
            path_length=0,
        )
        return (
            self._to_record(CaLevel.ROOT, root_certificate, root_private),
            self._to_record(CaLevel.INTERMEDIATE, intermediate_certificate, intermediate_private),
        )

    def _to_record(
        self, level: CaLevel, certificate: x509.Certificate, private_key: rsa.RSAPrivateKey
    ) -> CertificateAuthority:
        return CertificateAuthority(
            level=level,
            certificate_pem=certificate_to_pem(certificate),
            private_key_pem=private_key_to_pem(private_key, self._key_passphrase),
            serial_number=serial_hex(certificate),
            subject_dn=dn_string(certificate.subject),
            not_before=certificate.not_valid_before_utc,
            not_after=certificate.not_valid_after_utc,
        )

    # ──────────────────────── Cached material ────────────────────────

    def get_signing_ca(self) -> Result[SigningAuthority]:
        """The intermediate certificate and key. NOT_INITIALIZED before initialize()."""
        with self._lock:
            if self._signing is not None:
                return Result.success(self._signing)
        return (
            Result.combine(
                self._load(CaLevel.INTERMEDIATE),
                self._load(CaLevel.ROOT),
                lambda intermediate, root: (intermediate, root),
            )
            .flat_map(
                lambda pair: Result.from_computation(
                    lambda: SigningAuthority(
                        certificate=load_certificate(pair[0].certificate_pem),
                        private_key=load_private_key(pair[0].private_key_pem, self._key_passphrase),
                        root_certificate=load_certificate(pair[1].certificate_pem),
                    ),
                    ErrorCode.CONFIGURATION_ERROR,
                    "Stored CA material could not be loaded",
                )
            )
            .peek(self._cache_signing)
        )

    def get_trusted_roots(self) -> Result[TrustAnchors]:
        with self._lock:
            if self._anchors is not None:
                return Result.success(self._anchors)
        return (
            Result.combine(
                self._load(CaLevel.ROOT),
                self._load(CaLevel.INTERMEDIATE),
                lambda root, intermediate: (root, intermediate),
            )
            .flat_map(
                lambda pair: Result.from_computation(
                    lambda: TrustAnchors(
                        root=load_certificate(pair[0].certificate_pem),
                        intermediate=load_certificate(pair[1].certificate_pem),
                    ),
                    ErrorCode.CONFIGURATION_ERROR,
                    "Stored CA certificates could not be parsed",
                )
            )
            .peek(self._cache_anchors)
        )

    def get_record(self, level: CaLevel) -> Result[CertificateAuthority]:
        return self._load(level)

    def refresh(self) -> None:
        """Drop cached CA material; the next access reloads it from storage."""
        with self._lock:
            self._signing = None
            self._anchors = None

    def _load(self, level: CaLevel) -> Result[CertificateAuthority]:
        return self._repository.load(level).map_failure(_not_found_as_uninitialized)

    def _cache_signing(self, signing: SigningAuthority) -> None:
        with self._lock:
            self._signing = signing

    def _cache_anchors(self, anchors: TrustAnchors) -> None:
        with self._lock:
            self._anchors = anchors


def _not_found_as_uninitialized(failure: FailureDescription) -> FailureDescription:
    if failure.code is ErrorCode.NOT_FOUND:
        return FailureDescription(code=ErrorCode.NOT_INITIALIZED, message=NOT_INITIALIZED_MESSAGE)
    return failure

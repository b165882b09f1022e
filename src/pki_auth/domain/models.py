"""
Domain models — immutable records for CA material, certificates, login
challenges, OAuth2 artefacts and the audit trail.

These are pure value objects. Apart from small derived properties
(lazy expiry, scope parsing) they carry no behavior; persistence lives
behind the ports in pki_auth.domain.ports.

All models are frozen dataclasses (immutable) following functional principles.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

DEFAULT_CLIENT_ID = "default"
POSTMESSAGE_REDIRECT = "postmessage"


def utc_now() -> datetime:
    return datetime.now(UTC)


class CaLevel(Enum):
    ROOT = "ROOT"
    INTERMEDIATE = "INTERMEDIATE"


class CertificateStatus(Enum):
    """
    Lifecycle of an end-entity certificate.

    ACTIVE ↔ EXPIRED is derived from notAfter at read time and never stored;
    REVOKED and RENEWED are terminal.
    """

    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    RENEWED = "RENEWED"


class AuditAction(Enum):
    CA_INITIALIZED = "CA_INITIALIZED"
    CERTIFICATE_ISSUED = "CERTIFICATE_ISSUED"
    CERTIFICATE_RENEWED = "CERTIFICATE_RENEWED"
    CERTIFICATE_REVOKED = "CERTIFICATE_REVOKED"
    CERTIFICATE_VERIFIED = "CERTIFICATE_VERIFIED"
    OCSP_CHECK = "OCSP_CHECK"
    SIGNATURE_VERIFIED = "SIGNATURE_VERIFIED"
    SIGNATURE_REJECTED = "SIGNATURE_REJECTED"
    AUTHORIZATION_CODE_CREATED = "AUTHORIZATION_CODE_CREATED"
    TOKEN_ISSUED = "TOKEN_ISSUED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    CLIENT_REGISTERED = "CLIENT_REGISTERED"


# ─────────────────────── Certificate authority ───────────────────────


@dataclass(frozen=True, slots=True)
class SubjectInfo:
    """Subject attributes for a certificate. common_name is the display form."""

    common_name: str
    organization: str
    country: str
    email: str | None = None


@dataclass(frozen=True, slots=True)
class CertificateAuthority:
    """
    Root or intermediate CA material.

    private_key_pem is PKCS#8, encrypted when a CA key passphrase is
    configured. It never leaves the authority module.
    """

    level: CaLevel
    certificate_pem: str
    private_key_pem: str = field(repr=False)
    serial_number: str
    subject_dn: str
    not_before: datetime
    not_after: datetime


# ─────────────────────── End-entity certificates ───────────────────────


@dataclass(frozen=True, slots=True)
class Certificate:
    """
    An issued end-entity certificate as recorded by the server.

    Only the public half is kept; the private key goes back to the holder
    inside the PKCS#12 container and is not retained.
    """

    serial_number: str
    subject_dn: str
    issuer_dn: str
    common_name: str
    not_before: datetime
    not_after: datetime
    public_key_pem: str = field(repr=False)
    certificate_pem: str = field(repr=False)
    owner_user_id: str
    email: str | None = None
    status: CertificateStatus = CertificateStatus.ACTIVE
    signature_hash_algorithm: str = "sha256"
    created_at: datetime = field(default_factory=utc_now)

    def effective_status(self, now: datetime) -> CertificateStatus:
        """Stored status with lazy expiry applied."""
        if self.status is CertificateStatus.ACTIVE and self.not_after < now:
            return CertificateStatus.EXPIRED
        return self.status


@dataclass(frozen=True, slots=True)
class RevokedCertificateEntry:
    serial_number: str
    reason: str
    revoked_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class IssuedCertificate:
    """
    Everything handed back to the caller of an issuance.

    transport_container is the password-protected PKCS#12 archive holding the
    certificate, its private key and the CA chain.
    """

    certificate: Certificate
    certificate_pem: str
    chain_pems: tuple[str, ...]
    private_key_pem: str = field(repr=False)
    transport_container: bytes = field(repr=False)

    @property
    def serial_number(self) -> str:
        return self.certificate.serial_number

    @property
    def subject_dn(self) -> str:
        return self.certificate.subject_dn

    @property
    def issuer_dn(self) -> str:
        return self.certificate.issuer_dn

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_before

    @property
    def not_after(self) -> datetime:
        return self.certificate.not_after

    @property
    def display_name(self) -> str:
        return self.certificate.common_name


@dataclass(frozen=True, slots=True)
class VerificationReport:
    """Outcome of a certificate verification; valid iff no errors were collected."""

    serial_number: str | None
    errors: tuple[str, ...] = ()

    @property
    def valid(self) -> bool:
        return not self.errors


@dataclass(frozen=True, slots=True)
class CertificateStatusReport:
    """Simplified OCSP-style answer for a single serial number."""

    serial_number: str
    status: str
    this_update: datetime
    next_update: datetime
    certificate: Certificate | None = None
    reason: str | None = None
    revoked_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class RevocationList:
    """JSON rendition of the CRL: issuer plus every revocation entry."""

    issuer_dn: str
    this_update: datetime
    next_update: datetime
    entries: tuple[RevokedCertificateEntry, ...] = ()


# ─────────────────────── Login ───────────────────────


@dataclass(frozen=True, slots=True)
class Challenge:
    value: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True, slots=True)
class User:
    id: str
    name: str
    email: str | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class SignatureLogin:
    """A completed challenge-response login."""

    user: User
    certificate: Certificate


# ─────────────────────── OAuth2 ───────────────────────


@dataclass(frozen=True, slots=True)
class OAuthClient:
    """
    A registered relying party.

    Only the SHA-256 of the client secret is stored. redirect_uris are matched
    exactly.
    """

    client_id: str
    name: str
    client_secret_hash: str = field(repr=False)
    redirect_uris: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=utc_now)

    @property
    def is_default(self) -> bool:
        return self.client_id == DEFAULT_CLIENT_ID

    def allows_redirect(self, redirect_uri: str) -> bool:
        return redirect_uri in self.redirect_uris


@dataclass(frozen=True, slots=True)
class RegisteredClient:
    """Registration result; the only place the plaintext secret ever appears."""

    client: OAuthClient
    client_secret: str = field(repr=False)


@dataclass(frozen=True, slots=True)
class AuthorizationCode:
    code: str = field(repr=False)
    client_id: str
    user_id: str
    redirect_uri: str
    scope: str
    expires_at: datetime
    code_challenge: str | None = None
    code_challenge_method: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True, slots=True)
class OAuthToken:
    """
    Server-side record of an issued token pair.

    Tokens are stored as SHA-256 hex digests; the bearer values themselves
    exist only in the client's hands.
    """

    token_id: str
    access_token_hash: str
    refresh_token_hash: str
    client_id: str
    user_id: str
    scope: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    created_at: datetime = field(default_factory=utc_now)

    def is_refresh_expired(self, now: datetime) -> bool:
        return now >= self.refresh_expires_at


@dataclass(frozen=True, slots=True)
class TokenResponse:
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    expires_in: int
    scope: str
    token_type: str = "Bearer"
    id_token: str | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_token": self.refresh_token,
            "scope": self.scope,
        }
        if self.id_token is not None:
            body["id_token"] = self.id_token
        return body


# ─────────────────────── Audit ───────────────────────


@dataclass(frozen=True, slots=True)
class AuditEntry:
    action: AuditAction
    details: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    client_id: str | None = None
    ip_address: str | None = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utc_now)

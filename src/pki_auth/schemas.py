"""
Request and response bodies of the HTTP API.

Certificate and login endpoints speak camelCase JSON (serialNumber,
certificatePem, ...); the OAuth endpoints use the snake_case parameter
names of RFC 6749 and are parsed in routes.py instead.

Responses are built from domain objects with `from_domain` and rendered
with `dump()` (aliases, JSON-safe values).
"""

from __future__ import annotations

import base64
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from pki_auth.domain.models import (
    AuditEntry,
    Certificate,
    CertificateAuthority,
    CertificateStatus,
    CertificateStatusReport,
    Challenge,
    IssuedCertificate,
    RegisteredClient,
    RevocationList,
    RevokedCertificateEntry,
    User,
)


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def dump(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# ─────────────────────── Requests ───────────────────────


class VerifyCertificateRequest(ApiModel):
    certificate_pem: str = Field(alias="certificatePem", min_length=1)


class SignatureVerifyRequest(ApiModel):
    challenge: str = Field(min_length=1)
    signature: str = Field(min_length=1)
    certificate_serial_number: str = Field(alias="certificateSerialNumber", min_length=1)


class VerifyAndLoginRequest(SignatureVerifyRequest):
    client_id: str | None = Field(default=None, alias="clientId")
    redirect_uri: str | None = Field(default=None, alias="redirectUri")
    scope: str | None = None
    state: str | None = None
    code_challenge: str | None = Field(default=None, alias="codeChallenge")
    code_challenge_method: str | None = Field(default=None, alias="codeChallengeMethod")


class AuthorizationCodeRequest(ApiModel):
    user_id: str = Field(alias="userId", min_length=1)
    client_id: str = Field(alias="clientId", min_length=1)
    redirect_uri: str = Field(alias="redirectUri", min_length=1)
    scope: str | None = None
    code_challenge: str | None = Field(default=None, alias="codeChallenge")
    code_challenge_method: str | None = Field(default=None, alias="codeChallengeMethod")


class IssueCertificateRequest(ApiModel):
    """
    Identity plus container password.

    The display name comes from commonName (or name). The owner is userId,
    or else derived from phone.
    """

    common_name: str | None = Field(default=None, alias="commonName")
    name: str | None = None
    user_id: str | None = Field(default=None, alias="userId")
    phone: str | None = None
    email: str | None = None
    password: str
    validity_years: int | None = Field(default=None, alias="validityYears")

    @model_validator(mode="after")
    def require_identity(self) -> IssueCertificateRequest:
        if not (self.common_name or self.name):
            raise ValueError("commonName is required")
        if not (self.user_id or self.phone):
            raise ValueError("userId or phone is required")
        return self

    @property
    def display_name(self) -> str:
        return (self.common_name or self.name or "").strip()


class RenewCertificateRequest(ApiModel):
    serial_number: str = Field(alias="serialNumber", min_length=1)
    password: str
    validity_years: int | None = Field(default=None, alias="validityYears")


class RevokeCertificateRequest(ApiModel):
    serial_number: str = Field(alias="serialNumber", min_length=1)
    reason: str | None = None


class RegisterClientRequest(ApiModel):
    name: str = Field(min_length=1)
    redirect_uris: list[str] = Field(alias="redirectUris", min_length=1)


# ─────────────────────── Responses ───────────────────────


class ChallengeResponse(ApiModel):
    challenge: str
    expires_at: datetime = Field(alias="expiresAt")

    @classmethod
    def from_domain(cls, challenge: Challenge) -> ChallengeResponse:
        return cls(challenge=challenge.value, expires_at=challenge.expires_at)


class VerificationResponse(ApiModel):
    valid: bool
    serial_number: str | None = Field(default=None, alias="serialNumber")
    errors: list[str]


class UserView(ApiModel):
    id: str
    name: str
    email: str | None = None

    @classmethod
    def from_domain(cls, user: User) -> UserView:
        return cls(id=user.id, name=user.name, email=user.email)


class CertificateView(ApiModel):
    serial_number: str = Field(alias="serialNumber")
    subject_dn: str = Field(alias="subjectDN")
    issuer_dn: str = Field(alias="issuerDN")
    display_name: str = Field(alias="displayName")
    not_before: datetime = Field(alias="notBefore")
    not_after: datetime = Field(alias="notAfter")
    status: str | None = None
    certificate_pem: str | None = Field(default=None, alias="certificatePem")

    @classmethod
    def from_domain(
        cls,
        certificate: Certificate,
        status: CertificateStatus | None = None,
        include_pem: bool = False,
    ) -> CertificateView:
        return cls(
            serial_number=certificate.serial_number,
            subject_dn=certificate.subject_dn,
            issuer_dn=certificate.issuer_dn,
            display_name=certificate.common_name,
            not_before=certificate.not_before,
            not_after=certificate.not_after,
            status=(status or certificate.status).value,
            certificate_pem=certificate.certificate_pem if include_pem else None,
        )


class IssueCertificateResponse(ApiModel):
    success: bool = True
    certificate: CertificateView
    chain: list[str]
    p12_base64: str = Field(alias="p12Base64")
    display_name: str = Field(alias="displayName")

    @classmethod
    def from_domain(cls, issued: IssuedCertificate) -> IssueCertificateResponse:
        return cls(
            certificate=CertificateView.from_domain(issued.certificate, include_pem=True),
            chain=list(issued.chain_pems),
            p12_base64=base64.b64encode(issued.transport_container).decode("ascii"),
            display_name=issued.display_name,
        )


class RevocationView(ApiModel):
    serial_number: str = Field(alias="serialNumber")
    reason: str
    revoked_at: datetime = Field(alias="revokedAt")

    @classmethod
    def from_domain(cls, entry: RevokedCertificateEntry) -> RevocationView:
        return cls(serial_number=entry.serial_number, reason=entry.reason, revoked_at=entry.revoked_at)


class CertificateStatusResponse(ApiModel):
    serial_number: str = Field(alias="serialNumber")
    status: str
    reason: str | None = None
    revoked_at: datetime | None = Field(default=None, alias="revokedAt")
    this_update: datetime = Field(alias="thisUpdate")
    next_update: datetime = Field(alias="nextUpdate")
    certificate: CertificateView | None = None

    @classmethod
    def from_domain(cls, report: CertificateStatusReport) -> CertificateStatusResponse:
        return cls(
            serial_number=report.serial_number,
            status=report.status,
            reason=report.reason,
            revoked_at=report.revoked_at,
            this_update=report.this_update,
            next_update=report.next_update,
            certificate=CertificateView.from_domain(report.certificate) if report.certificate else None,
        )


class RevocationListResponse(ApiModel):
    version: int = 2
    issuer: str
    this_update: datetime = Field(alias="thisUpdate")
    next_update: datetime = Field(alias="nextUpdate")
    revoked_certificates: list[RevocationView] = Field(alias="revokedCertificates")

    @classmethod
    def from_domain(cls, crl: RevocationList) -> RevocationListResponse:
        return cls(
            issuer=crl.issuer_dn,
            this_update=crl.this_update,
            next_update=crl.next_update,
            revoked_certificates=[RevocationView.from_domain(e) for e in crl.entries],
        )

    def to_text(self) -> str:
        """Human-readable listing in the shape of `openssl crl -text` (not DER/ASN.1)."""
        lines = [
            "Certificate Revocation List (CRL):",
            f"    Version: {self.version}",
            "    Signature Algorithm: sha256WithRSAEncryption",
            f"    Issuer: {self.issuer}",
            f"    Last Update: {self.this_update.isoformat()}",
            f"    Next Update: {self.next_update.isoformat()}",
            "Revoked Certificates:",
        ]
        for entry in self.revoked_certificates:
            lines.append(f"    Serial Number: {entry.serial_number}")
            lines.append(f"        Revocation Date: {entry.revoked_at.isoformat()}")
            lines.append(f"        Reason: {entry.reason}")
        return "\n".join(lines) + "\n"


class CaView(ApiModel):
    serial_number: str = Field(alias="serialNumber")
    subject_dn: str = Field(alias="subjectDN")
    not_after: datetime = Field(alias="notAfter")

    @classmethod
    def from_domain(cls, ca: CertificateAuthority) -> CaView:
        return cls(serial_number=ca.serial_number, subject_dn=ca.subject_dn, not_after=ca.not_after)


class CaInitResponse(ApiModel):
    success: bool = True
    root_ca: CaView = Field(alias="rootCA")
    intermediate_ca: CaView = Field(alias="intermediateCA")


class ClientView(ApiModel):
    client_id: str = Field(alias="clientId")
    client_secret: str | None = Field(default=None, alias="clientSecret")
    name: str
    redirect_uris: list[str] = Field(alias="redirectUris")

    @classmethod
    def from_registration(cls, registered: RegisteredClient) -> ClientView:
        return cls(
            client_id=registered.client.client_id,
            client_secret=registered.client_secret,
            name=registered.client.name,
            redirect_uris=list(registered.client.redirect_uris),
        )


class AuditEntryView(ApiModel):
    id: str
    action: str
    user_id: str | None = Field(default=None, alias="userId")
    client_id: str | None = Field(default=None, alias="clientId")
    details: dict[str, Any]
    ip_address: str | None = Field(default=None, alias="ipAddress")
    created_at: datetime = Field(alias="createdAt")

    @classmethod
    def from_domain(cls, entry: AuditEntry) -> AuditEntryView:
        return cls(
            id=str(entry.id),
            action=entry.action.value,
            user_id=entry.user_id,
            client_id=entry.client_id,
            details=entry.details,
            ip_address=entry.ip_address,
            created_at=entry.created_at,
        )


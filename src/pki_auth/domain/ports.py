"""
Ports — Protocol-based interfaces for the persistence adapters.

These define WHAT the services need (contracts) without specifying HOW it is
stored. Following hexagonal architecture:

  Domain ← Ports (protocols) ← Adapters (memory, PostgreSQL)

Conventions shared by every port:
  - every method returns Result; nothing raises across the port
  - an absent record is Failure(NOT_FOUND)
  - a uniqueness or state precondition violated at the store is Failure(CONFLICT)
  - take() is an atomic delete-and-return: of two concurrent callers for the
    same key, exactly one gets the record
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable

from railway.result import Result

from pki_auth.domain.models import (
    AuditEntry,
    AuthorizationCode,
    CaLevel,
    Certificate,
    CertificateAuthority,
    Challenge,
    OAuthClient,
    OAuthToken,
    RevokedCertificateEntry,
    User,
)


@runtime_checkable
class CaRepository(Protocol):
    """
    Port: durable storage for the root + intermediate CA pair.

    save_hierarchy writes both levels in one transaction and fails with
    CONFLICT if any level already exists, which makes initialization
    exactly-once even when several instances boot at the same time.
    """

    def save_hierarchy(
        self, root: CertificateAuthority, intermediate: CertificateAuthority
    ) -> Result[tuple[CertificateAuthority, CertificateAuthority]]: ...

    def load(self, level: CaLevel) -> Result[CertificateAuthority]: ...


@runtime_checkable
class CertificateRepository(Protocol):
    """
    Port: end-entity certificate records and the revocation list.

    The serial number is the primary key (CONFLICT on collision). Status
    changes are compare-and-set on the stored status, so a certificate can be
    renewed or revoked only once. revoke() flips the status and appends the
    revocation entry in the same transaction.
    """

    def add(self, certificate: Certificate) -> Result[Certificate]: ...

    def get(self, serial_number: str) -> Result[Certificate]: ...

    def list_for_user(self, user_id: str) -> Result[list[Certificate]]: ...

    def mark_renewed(self, serial_number: str) -> Result[Certificate]: ...

    def revoke(
        self, serial_number: str, reason: str, revoked_at: datetime
    ) -> Result[RevokedCertificateEntry]: ...

    def find_revocation(self, serial_number: str) -> Result[RevokedCertificateEntry]: ...

    def list_revocations(self) -> Result[list[RevokedCertificateEntry]]: ...


@runtime_checkable
class ChallengeRepository(Protocol):
    """Port: one-time login challenges."""

    def add(self, challenge: Challenge) -> Result[Challenge]: ...

    def get(self, value: str) -> Result[Challenge]: ...

    def take(self, value: str) -> Result[Challenge]: ...

    def purge_expired(self, now: datetime) -> Result[int]: ...


@runtime_checkable
class AuthorizationCodeRepository(Protocol):
    """Port: one-time OAuth2 authorization codes."""

    def add(self, code: AuthorizationCode) -> Result[AuthorizationCode]: ...

    def get(self, code: str) -> Result[AuthorizationCode]: ...

    def take(self, code: str) -> Result[AuthorizationCode]: ...

    def purge_expired(self, now: datetime) -> Result[int]: ...


@runtime_checkable
class ClientRepository(Protocol):
    """Port: registered OAuth2 clients."""

    def add(self, client: OAuthClient) -> Result[OAuthClient]: ...

    def get(self, client_id: str) -> Result[OAuthClient]: ...


@runtime_checkable
class TokenRepository(Protocol):
    """
    Port: server-side token records, keyed by token hashes.

    find() matches either the access or the refresh hash. take_refresh() is
    the atomic half of refresh-token rotation.
    """

    def add(self, token: OAuthToken) -> Result[OAuthToken]: ...

    def find(self, token_hash: str) -> Result[OAuthToken]: ...

    def take_refresh(self, refresh_token_hash: str) -> Result[OAuthToken]: ...

    def delete(self, token_id: str) -> Result[bool]: ...

    def purge_expired(self, now: datetime) -> Result[int]: ...


@runtime_checkable
class UserRepository(Protocol):
    """Port: the user directory, keyed by user id."""

    def upsert(self, user: User) -> Result[User]: ...

    def get(self, user_id: str) -> Result[User]: ...


@runtime_checkable
class AuditTrail(Protocol):
    """Port: append-only audit log."""

    def append(self, entry: AuditEntry) -> Result[AuditEntry]: ...

    def recent(self, limit: int, offset: int = 0) -> Result[list[AuditEntry]]: ...


@dataclass(frozen=True, slots=True)
class Repositories:
    """All persistence ports, as wired by the composition root."""

    ca: CaRepository
    certificates: CertificateRepository
    challenges: ChallengeRepository
    codes: AuthorizationCodeRepository
    clients: ClientRepository
    tokens: TokenRepository
    users: UserRepository
    audit: AuditTrail

"""
In-memory repository adapters.

Adapter layer — implements every persistence port with dictionaries guarded
by a lock, so the single-use and uniqueness guarantees hold across request
threads of one process. Used by the test-suite and by single-process
development deployments (STORAGE=memory); anything horizontally scaled must
use the PostgreSQL adapters.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime

from railway import ErrorCode
from railway.result import Result

from pki_auth.domain.models import (
    AuditEntry,
    AuthorizationCode,
    CaLevel,
    Certificate,
    CertificateAuthority,
    CertificateStatus,
    Challenge,
    OAuthClient,
    OAuthToken,
    RevokedCertificateEntry,
    User,
)
from pki_auth.domain.ports import Repositories


class InMemoryCaRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._levels: dict[CaLevel, CertificateAuthority] = {}

    def save_hierarchy(
        self, root: CertificateAuthority, intermediate: CertificateAuthority
    ) -> Result[tuple[CertificateAuthority, CertificateAuthority]]:
        with self._lock:
            if self._levels:
                return Result.failure(ErrorCode.CONFLICT, "CA already initialized")
            self._levels[CaLevel.ROOT] = root
            self._levels[CaLevel.INTERMEDIATE] = intermediate
        return Result.success((root, intermediate))

    def load(self, level: CaLevel) -> Result[CertificateAuthority]:
        with self._lock:
            authority = self._levels.get(level)
        return Result.from_optional(authority, f"{level.value} CA not found", ErrorCode.NOT_FOUND)


class InMemoryCertificateRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._certificates: dict[str, Certificate] = {}
        self._revocations: dict[str, RevokedCertificateEntry] = {}

    def add(self, certificate: Certificate) -> Result[Certificate]:
        with self._lock:
            if certificate.serial_number in self._certificates:
                return Result.failure(
                    ErrorCode.CONFLICT, f"Duplicate serial number {certificate.serial_number}"
                )
            self._certificates[certificate.serial_number] = certificate
        return Result.success(certificate)

    def get(self, serial_number: str) -> Result[Certificate]:
        with self._lock:
            certificate = self._certificates.get(serial_number)
        return Result.from_optional(certificate, "Certificate not found", ErrorCode.NOT_FOUND)

    def list_for_user(self, user_id: str) -> Result[list[Certificate]]:
        with self._lock:
            owned = [c for c in self._certificates.values() if c.owner_user_id == user_id]
        return Result.success(sorted(owned, key=lambda c: c.created_at, reverse=True))

    def mark_renewed(self, serial_number: str) -> Result[Certificate]:
        with self._lock:
            current = self._certificates.get(serial_number)
            if current is None:
                return Result.failure(ErrorCode.NOT_FOUND, "Certificate not found")
            if current.status is not CertificateStatus.ACTIVE:
                return Result.failure(
                    ErrorCode.CONFLICT, f"Certificate already {current.status.value.lower()}"
                )
            renewed = replace(current, status=CertificateStatus.RENEWED)
            self._certificates[serial_number] = renewed
        return Result.success(renewed)

    def revoke(
        self, serial_number: str, reason: str, revoked_at: datetime
    ) -> Result[RevokedCertificateEntry]:
        with self._lock:
            current = self._certificates.get(serial_number)
            if current is None:
                return Result.failure(ErrorCode.NOT_FOUND, "Certificate not found")
            if current.status is not CertificateStatus.ACTIVE or serial_number in self._revocations:
                return Result.failure(
                    ErrorCode.CONFLICT, f"Certificate already {current.status.value.lower()}"
                )
            entry = RevokedCertificateEntry(serial_number, reason, revoked_at)
            self._certificates[serial_number] = replace(current, status=CertificateStatus.REVOKED)
            self._revocations[serial_number] = entry
        return Result.success(entry)

    def find_revocation(self, serial_number: str) -> Result[RevokedCertificateEntry]:
        with self._lock:
            entry = self._revocations.get(serial_number)
        return Result.from_optional(entry, "Revocation entry not found", ErrorCode.NOT_FOUND)

    def list_revocations(self) -> Result[list[RevokedCertificateEntry]]:
        with self._lock:
            entries = list(self._revocations.values())
        return Result.success(sorted(entries, key=lambda e: e.revoked_at))


class _ExpiringStore[T]:
    """Keyed single-use records with an expires_at attribute."""

    def __init__(self, label: str) -> None:
        self._label = label
        self._lock = threading.Lock()
        self._items: dict[str, T] = {}

    def put(self, key: str, item: T) -> Result[T]:
        with self._lock:
            if key in self._items:
                return Result.failure(ErrorCode.CONFLICT, f"Duplicate {self._label}")
            self._items[key] = item
        return Result.success(item)

    def get(self, key: str) -> Result[T]:
        with self._lock:
            item = self._items.get(key)
        return Result.from_optional(item, f"{self._label} not found", ErrorCode.NOT_FOUND)

    def take(self, key: str) -> Result[T]:
        with self._lock:
            item = self._items.pop(key, None)
        return Result.from_optional(item, f"{self._label} not found", ErrorCode.NOT_FOUND)

    def purge(self, now: datetime) -> Result[int]:
        with self._lock:
            expired = [k for k, v in self._items.items() if now >= v.expires_at]  # type: ignore[attr-defined]
            for key in expired:
                del self._items[key]
        return Result.success(len(expired))


class InMemoryChallengeRepository:
    def __init__(self) -> None:
        self._store: _ExpiringStore[Challenge] = _ExpiringStore("Challenge")

    def add(self, challenge: Challenge) -> Result[Challenge]:
        return self._store.put(challenge.value, challenge)

    def get(self, value: str) -> Result[Challenge]:
        return self._store.get(value)

    def take(self, value: str) -> Result[Challenge]:
        return self._store.take(value)

    def purge_expired(self, now: datetime) -> Result[int]:
        return self._store.purge(now)


class InMemoryAuthorizationCodeRepository:
    def __init__(self) -> None:
        self._store: _ExpiringStore[AuthorizationCode] = _ExpiringStore("Authorization code")

    def add(self, code: AuthorizationCode) -> Result[AuthorizationCode]:
        return self._store.put(code.code, code)

    def get(self, code: str) -> Result[AuthorizationCode]:
        return self._store.get(code)

    def take(self, code: str) -> Result[AuthorizationCode]:
        return self._store.take(code)

    def purge_expired(self, now: datetime) -> Result[int]:
        return self._store.purge(now)


class InMemoryClientRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._clients: dict[str, OAuthClient] = {}

    def add(self, client: OAuthClient) -> Result[OAuthClient]:
        with self._lock:
            if client.client_id in self._clients:
                return Result.failure(ErrorCode.CONFLICT, f"Client {client.client_id} already exists")
            self._clients[client.client_id] = client
        return Result.success(client)

    def get(self, client_id: str) -> Result[OAuthClient]:
        with self._lock:
            client = self._clients.get(client_id)
        return Result.from_optional(client, "Client not found", ErrorCode.NOT_FOUND)


class InMemoryTokenRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: dict[str, OAuthToken] = {}

    def add(self, token: OAuthToken) -> Result[OAuthToken]:
        with self._lock:
            self._tokens[token.token_id] = token
        return Result.success(token)

    def find(self, token_hash: str) -> Result[OAuthToken]:
        with self._lock:
            found = next(
                (
                    t
                    for t in self._tokens.values()
                    if token_hash in (t.access_token_hash, t.refresh_token_hash)
                ),
                None,
            )
        return Result.from_optional(found, "Token not found", ErrorCode.NOT_FOUND)

    def take_refresh(self, refresh_token_hash: str) -> Result[OAuthToken]:
        with self._lock:
            found = next(
                (t for t in self._tokens.values() if t.refresh_token_hash == refresh_token_hash),
                None,
            )
            if found is not None:
                del self._tokens[found.token_id]
        return Result.from_optional(found, "Token not found", ErrorCode.NOT_FOUND)

    def delete(self, token_id: str) -> Result[bool]:
        with self._lock:
            removed = self._tokens.pop(token_id, None)
        return Result.success(removed is not None)

    def purge_expired(self, now: datetime) -> Result[int]:
        with self._lock:
            expired = [k for k, t in self._tokens.items() if t.is_refresh_expired(now)]
            for key in expired:
                del self._tokens[key]
        return Result.success(len(expired))


class InMemoryUserRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._users: dict[str, User] = {}

    def upsert(self, user: User) -> Result[User]:
        with self._lock:
            existing = self._users.get(user.id)
            stored = replace(user, created_at=existing.created_at) if existing else user
            self._users[user.id] = stored
        return Result.success(stored)

    def get(self, user_id: str) -> Result[User]:
        with self._lock:
            user = self._users.get(user_id)
        return Result.from_optional(user, "User not found", ErrorCode.NOT_FOUND)


class InMemoryAuditTrail:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: list[AuditEntry] = []

    def append(self, entry: AuditEntry) -> Result[AuditEntry]:
        with self._lock:
            self._entries.append(entry)
        return Result.success(entry)

    def recent(self, limit: int, offset: int = 0) -> Result[list[AuditEntry]]:
        with self._lock:
            newest_first = list(reversed(self._entries))
        return Result.success(newest_first[offset : offset + limit])


def create_memory_repositories() -> Repositories:
    return Repositories(
        ca=InMemoryCaRepository(),
        certificates=InMemoryCertificateRepository(),
        challenges=InMemoryChallengeRepository(),
        codes=InMemoryAuthorizationCodeRepository(),
        clients=InMemoryClientRepository(),
        tokens=InMemoryTokenRepository(),
        users=InMemoryUserRepository(),
        audit=InMemoryAuditTrail(),
    )

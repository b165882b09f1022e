"""
PostgreSQL repository adapters.

Adapter layer — implements the persistence ports using psycopg (v3) for sync
PostgreSQL access with parameterized queries. Every operation runs in its own
transaction on its own connection.

Concurrency guarantees come from the database, not from this process:
  - certificate_authorities.level is the primary key, so the CA pair can be
    inserted exactly once even under concurrent first-boot initialization
  - certificates.serial_number is the primary key (serial uniqueness)
  - single-use records (challenges, authorization codes, refresh tokens) are
    consumed with DELETE ... RETURNING, so one caller wins
  - status changes are UPDATE ... WHERE status = 'ACTIVE' (compare-and-set)

No ORM — raw parameterized SQL for maximum control and transparency.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

import psycopg
import structlog
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from railway import ErrorCode
from railway.result import Result

from pki_auth.domain.models import (
    AuditAction,
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

T = TypeVar("T")
log = structlog.get_logger()

SCHEMA = """
CREATE TABLE IF NOT EXISTS certificate_authorities (
    level            TEXT PRIMARY KEY CHECK (level IN ('ROOT', 'INTERMEDIATE')),
    certificate_pem  TEXT NOT NULL,
    private_key_pem  TEXT NOT NULL,
    serial_number    TEXT NOT NULL UNIQUE,
    subject_dn       TEXT NOT NULL,
    not_before       TIMESTAMPTZ NOT NULL,
    not_after        TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS users (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    email       TEXT,
    created_at  TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS certificates (
    serial_number             TEXT PRIMARY KEY,
    subject_dn                TEXT NOT NULL,
    issuer_dn                 TEXT NOT NULL,
    common_name               TEXT NOT NULL,
    email                     TEXT,
    not_before                TIMESTAMPTZ NOT NULL,
    not_after                 TIMESTAMPTZ NOT NULL,
    public_key_pem            TEXT NOT NULL,
    certificate_pem           TEXT NOT NULL,
    owner_user_id             TEXT NOT NULL,
    status                    TEXT NOT NULL,
    signature_hash_algorithm  TEXT NOT NULL,
    created_at                TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS certificates_owner_idx ON certificates (owner_user_id);

CREATE TABLE IF NOT EXISTS revoked_certificates (
    serial_number  TEXT PRIMARY KEY REFERENCES certificates (serial_number),
    reason         TEXT NOT NULL,
    revoked_at     TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS challenges (
    value       TEXT PRIMARY KEY,
    created_at  TIMESTAMPTZ NOT NULL,
    expires_at  TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS authorization_codes (
    code                   TEXT PRIMARY KEY,
    client_id              TEXT NOT NULL,
    user_id                TEXT NOT NULL,
    redirect_uri           TEXT NOT NULL,
    scope                  TEXT NOT NULL,
    code_challenge         TEXT,
    code_challenge_method  TEXT,
    expires_at             TIMESTAMPTZ NOT NULL,
    created_at             TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS oauth_clients (
    client_id           TEXT PRIMARY KEY,
    name                TEXT NOT NULL,
    client_secret_hash  TEXT NOT NULL,
    redirect_uris       TEXT[] NOT NULL,
    created_at          TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS oauth_tokens (
    token_id            TEXT PRIMARY KEY,
    access_token_hash   TEXT NOT NULL UNIQUE,
    refresh_token_hash  TEXT NOT NULL UNIQUE,
    client_id           TEXT NOT NULL,
    user_id             TEXT NOT NULL,
    scope               TEXT NOT NULL,
    access_expires_at   TIMESTAMPTZ NOT NULL,
    refresh_expires_at  TIMESTAMPTZ NOT NULL,
    created_at          TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_logs (
    id          UUID PRIMARY KEY,
    action      TEXT NOT NULL,
    user_id     TEXT,
    client_id   TEXT,
    details     JSONB NOT NULL,
    ip_address  TEXT,
    created_at  TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS audit_logs_created_idx ON audit_logs (created_at DESC);
"""

_INSERT_CA = """
INSERT INTO certificate_authorities (
    level, certificate_pem, private_key_pem, serial_number, subject_dn, not_before, not_after
) VALUES (%s, %s, %s, %s, %s, %s, %s)
"""

_INSERT_CERTIFICATE = """
INSERT INTO certificates (
    serial_number, subject_dn, issuer_dn, common_name, email, not_before, not_after,
    public_key_pem, certificate_pem, owner_user_id, status, signature_hash_algorithm, created_at
) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
"""

_SET_STATUS_IF_ACTIVE = """
UPDATE certificates SET status = %s
WHERE serial_number = %s AND status = 'ACTIVE'
RETURNING *
"""

_INSERT_CODE = """
INSERT INTO authorization_codes (
    code, client_id, user_id, redirect_uri, scope, code_challenge, code_challenge_method,
    expires_at, created_at
) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
"""

_INSERT_TOKEN = """
INSERT INTO oauth_tokens (
    token_id, access_token_hash, refresh_token_hash, client_id, user_id, scope,
    access_expires_at, refresh_expires_at, created_at
) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
"""

_UPSERT_USER = """
INSERT INTO users (id, name, email, created_at) VALUES (%s, %s, %s, %s)
ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name, email = EXCLUDED.email
RETURNING *
"""

_INSERT_AUDIT = """
INSERT INTO audit_logs (id, action, user_id, client_id, details, ip_address, created_at)
VALUES (%s, %s, %s, %s, %s, %s, %s)
"""

type _Cursor = psycopg.Cursor[dict[str, Any]]


def ensure_schema(dsn: str) -> Result[bool]:
    """Create all tables and indexes that do not exist yet."""

    def _create() -> bool:
        with psycopg.connect(dsn) as conn, conn.transaction():
            conn.execute(SCHEMA)
        log.info("repository.schema_ready")
        return True

    return Result.from_computation(_create, ErrorCode.DATABASE_ERROR, "Failed to create database schema")


class _PsycopgRepository:
    """
    Shared transaction runner.

    `work` receives a dict-row cursor inside a transaction and returns a
    Result. Unique violations become CONFLICT when a conflict message is
    given; every other exception becomes DATABASE_ERROR.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    def _run(
        self,
        work: Callable[[_Cursor], Result[T]],
        error_message: str,
        conflict_message: str | None = None,
    ) -> Result[T]:
        try:
            with (
                psycopg.connect(self._dsn, row_factory=dict_row) as conn,
                conn.transaction(),
                conn.cursor() as cur,
            ):
                return work(cur)
        except psycopg.errors.UniqueViolation as e:
            if conflict_message is None:
                return Result.failure(ErrorCode.DATABASE_ERROR, error_message, e)
            return Result.failure(ErrorCode.CONFLICT, conflict_message, e)
        except Exception as e:
            return Result.failure(ErrorCode.DATABASE_ERROR, error_message, e)


# ─────────────────────── Row mapping ───────────────────────


def _to_ca(row: dict[str, Any]) -> CertificateAuthority:
    return CertificateAuthority(**{**row, "level": CaLevel(row["level"])})


def _to_certificate(row: dict[str, Any]) -> Certificate:
    return Certificate(**{**row, "status": CertificateStatus(row["status"])})


def _to_client(row: dict[str, Any]) -> OAuthClient:
    return OAuthClient(**{**row, "redirect_uris": tuple(row["redirect_uris"])})


def _to_audit(row: dict[str, Any]) -> AuditEntry:
    return AuditEntry(**{**row, "action": AuditAction(row["action"])})


def _one(row: dict[str, Any] | None, mapper: Callable[[dict[str, Any]], T], label: str) -> Result[T]:
    if row is None:
        return Result.failure(ErrorCode.NOT_FOUND, f"{label} not found")
    return Result.success(mapper(row))


# ─────────────────────── Adapters ───────────────────────


class PsycopgCaRepository(_PsycopgRepository):
    def save_hierarchy(
        self, root: CertificateAuthority, intermediate: CertificateAuthority
    ) -> Result[tuple[CertificateAuthority, CertificateAuthority]]:
        def _insert(cur: _Cursor) -> Result[tuple[CertificateAuthority, CertificateAuthority]]:
            for ca in (root, intermediate):
                cur.execute(
                    _INSERT_CA,
                    (
                        ca.level.value,
                        ca.certificate_pem,
                        ca.private_key_pem,
                        ca.serial_number,
                        ca.subject_dn,
                        ca.not_before,
                        ca.not_after,
                    ),
                )
            log.info("repository.ca_stored", root=root.serial_number, intermediate=intermediate.serial_number)
            return Result.success((root, intermediate))

        return self._run(_insert, "Failed to store CA hierarchy", "CA already initialized")

    def load(self, level: CaLevel) -> Result[CertificateAuthority]:
        def _select(cur: _Cursor) -> Result[CertificateAuthority]:
            cur.execute("SELECT * FROM certificate_authorities WHERE level = %s", (level.value,))
            return _one(cur.fetchone(), _to_ca, f"{level.value} CA")

        return self._run(_select, "Failed to load CA")


class PsycopgCertificateRepository(_PsycopgRepository):
    def add(self, certificate: Certificate) -> Result[Certificate]:
        def _insert(cur: _Cursor) -> Result[Certificate]:
            c = certificate
            cur.execute(
                _INSERT_CERTIFICATE,
                (
                    c.serial_number,
                    c.subject_dn,
                    c.issuer_dn,
                    c.common_name,
                    c.email,
                    c.not_before,
                    c.not_after,
                    c.public_key_pem,
                    c.certificate_pem,
                    c.owner_user_id,
                    c.status.value,
                    c.signature_hash_algorithm,
                    c.created_at,
                ),
            )
            return Result.success(certificate)

        return self._run(
            _insert,
            "Failed to store certificate",
            f"Duplicate serial number {certificate.serial_number}",
        )

    def get(self, serial_number: str) -> Result[Certificate]:
        def _select(cur: _Cursor) -> Result[Certificate]:
            cur.execute("SELECT * FROM certificates WHERE serial_number = %s", (serial_number,))
            return _one(cur.fetchone(), _to_certificate, "Certificate")

        return self._run(_select, "Failed to load certificate")

    def list_for_user(self, user_id: str) -> Result[list[Certificate]]:
        def _select(cur: _Cursor) -> Result[list[Certificate]]:
            cur.execute(
                "SELECT * FROM certificates WHERE owner_user_id = %s ORDER BY created_at DESC",
                (user_id,),
            )
            return Result.success([_to_certificate(row) for row in cur.fetchall()])

        return self._run(_select, "Failed to list certificates")

    def mark_renewed(self, serial_number: str) -> Result[Certificate]:
        def _update(cur: _Cursor) -> Result[Certificate]:
            cur.execute(_SET_STATUS_IF_ACTIVE, (CertificateStatus.RENEWED.value, serial_number))
            row = cur.fetchone()
            if row is None:
                return self._explain_missed_update(cur, serial_number)
            return Result.success(_to_certificate(row))

        return self._run(_update, "Failed to mark certificate renewed")

    def revoke(
        self, serial_number: str, reason: str, revoked_at: datetime
    ) -> Result[RevokedCertificateEntry]:
        def _update(cur: _Cursor) -> Result[RevokedCertificateEntry]:
            cur.execute(_SET_STATUS_IF_ACTIVE, (CertificateStatus.REVOKED.value, serial_number))
            if cur.fetchone() is None:
                return self._explain_missed_update(cur, serial_number)
            cur.execute(
                "INSERT INTO revoked_certificates (serial_number, reason, revoked_at) VALUES (%s, %s, %s)",
                (serial_number, reason, revoked_at),
            )
            return Result.success(RevokedCertificateEntry(serial_number, reason, revoked_at))

        return self._run(_update, "Failed to revoke certificate", "Certificate already revoked")

    def find_revocation(self, serial_number: str) -> Result[RevokedCertificateEntry]:
        def _select(cur: _Cursor) -> Result[RevokedCertificateEntry]:
            cur.execute("SELECT * FROM revoked_certificates WHERE serial_number = %s", (serial_number,))
            return _one(cur.fetchone(), lambda row: RevokedCertificateEntry(**row), "Revocation entry")

        return self._run(_select, "Failed to load revocation entry")

    def list_revocations(self) -> Result[list[RevokedCertificateEntry]]:
        def _select(cur: _Cursor) -> Result[list[RevokedCertificateEntry]]:
            cur.execute("SELECT * FROM revoked_certificates ORDER BY revoked_at")
            return Result.success([RevokedCertificateEntry(**row) for row in cur.fetchall()])

        return self._run(_select, "Failed to list revocations")

    @staticmethod
    def _explain_missed_update(cur: _Cursor, serial_number: str) -> Result[Any]:
        cur.execute("SELECT status FROM certificates WHERE serial_number = %s", (serial_number,))
        row = cur.fetchone()
        if row is None:
            return Result.failure(ErrorCode.NOT_FOUND, "Certificate not found")
        return Result.failure(ErrorCode.CONFLICT, f"Certificate already {row['status'].lower()}")


class PsycopgChallengeRepository(_PsycopgRepository):
    def add(self, challenge: Challenge) -> Result[Challenge]:
        def _insert(cur: _Cursor) -> Result[Challenge]:
            cur.execute(
                "INSERT INTO challenges (value, created_at, expires_at) VALUES (%s, %s, %s)",
                (challenge.value, challenge.created_at, challenge.expires_at),
            )
            return Result.success(challenge)

        return self._run(_insert, "Failed to store challenge", "Duplicate challenge")

    def get(self, value: str) -> Result[Challenge]:
        def _select(cur: _Cursor) -> Result[Challenge]:
            cur.execute("SELECT * FROM challenges WHERE value = %s", (value,))
            return _one(cur.fetchone(), lambda row: Challenge(**row), "Challenge")

        return self._run(_select, "Failed to load challenge")

    def take(self, value: str) -> Result[Challenge]:
        def _delete(cur: _Cursor) -> Result[Challenge]:
            cur.execute("DELETE FROM challenges WHERE value = %s RETURNING *", (value,))
            return _one(cur.fetchone(), lambda row: Challenge(**row), "Challenge")

        return self._run(_delete, "Failed to consume challenge")

    def purge_expired(self, now: datetime) -> Result[int]:
        def _delete(cur: _Cursor) -> Result[int]:
            cur.execute("DELETE FROM challenges WHERE expires_at <= %s", (now,))
            return Result.success(cur.rowcount)

        return self._run(_delete, "Failed to purge challenges")


class PsycopgAuthorizationCodeRepository(_PsycopgRepository):
    def add(self, code: AuthorizationCode) -> Result[AuthorizationCode]:
        def _insert(cur: _Cursor) -> Result[AuthorizationCode]:
            cur.execute(
                _INSERT_CODE,
                (
                    code.code,
                    code.client_id,
                    code.user_id,
                    code.redirect_uri,
                    code.scope,
                    code.code_challenge,
                    code.code_challenge_method,
                    code.expires_at,
                    code.created_at,
                ),
            )
            return Result.success(code)

        return self._run(_insert, "Failed to store authorization code", "Duplicate authorization code")

    def get(self, code: str) -> Result[AuthorizationCode]:
        def _select(cur: _Cursor) -> Result[AuthorizationCode]:
            cur.execute("SELECT * FROM authorization_codes WHERE code = %s", (code,))
            return _one(cur.fetchone(), lambda row: AuthorizationCode(**row), "Authorization code")

        return self._run(_select, "Failed to load authorization code")

    def take(self, code: str) -> Result[AuthorizationCode]:
        def _delete(cur: _Cursor) -> Result[AuthorizationCode]:
            cur.execute("DELETE FROM authorization_codes WHERE code = %s RETURNING *", (code,))
            return _one(cur.fetchone(), lambda row: AuthorizationCode(**row), "Authorization code")

        return self._run(_delete, "Failed to consume authorization code")

    def purge_expired(self, now: datetime) -> Result[int]:
        def _delete(cur: _Cursor) -> Result[int]:
            cur.execute("DELETE FROM authorization_codes WHERE expires_at <= %s", (now,))
            return Result.success(cur.rowcount)

        return self._run(_delete, "Failed to purge authorization codes")


class PsycopgClientRepository(_PsycopgRepository):
    def add(self, client: OAuthClient) -> Result[OAuthClient]:
        def _insert(cur: _Cursor) -> Result[OAuthClient]:
            cur.execute(
                "INSERT INTO oauth_clients (client_id, name, client_secret_hash, redirect_uris, created_at)"
                " VALUES (%s, %s, %s, %s, %s)",
                (
                    client.client_id,
                    client.name,
                    client.client_secret_hash,
                    list(client.redirect_uris),
                    client.created_at,
                ),
            )
            return Result.success(client)

        return self._run(_insert, "Failed to store client", f"Client {client.client_id} already exists")

    def get(self, client_id: str) -> Result[OAuthClient]:
        def _select(cur: _Cursor) -> Result[OAuthClient]:
            cur.execute("SELECT * FROM oauth_clients WHERE client_id = %s", (client_id,))
            return _one(cur.fetchone(), _to_client, "Client")

        return self._run(_select, "Failed to load client")


class PsycopgTokenRepository(_PsycopgRepository):
    def add(self, token: OAuthToken) -> Result[OAuthToken]:
        def _insert(cur: _Cursor) -> Result[OAuthToken]:
            cur.execute(
                _INSERT_TOKEN,
                (
                    token.token_id,
                    token.access_token_hash,
                    token.refresh_token_hash,
                    token.client_id,
                    token.user_id,
                    token.scope,
                    token.access_expires_at,
                    token.refresh_expires_at,
                    token.created_at,
                ),
            )
            return Result.success(token)

        return self._run(_insert, "Failed to store token")

    def find(self, token_hash: str) -> Result[OAuthToken]:
        def _select(cur: _Cursor) -> Result[OAuthToken]:
            cur.execute(
                "SELECT * FROM oauth_tokens WHERE access_token_hash = %s OR refresh_token_hash = %s",
                (token_hash, token_hash),
            )
            return _one(cur.fetchone(), lambda row: OAuthToken(**row), "Token")

        return self._run(_select, "Failed to load token")

    def take_refresh(self, refresh_token_hash: str) -> Result[OAuthToken]:
        def _delete(cur: _Cursor) -> Result[OAuthToken]:
            cur.execute(
                "DELETE FROM oauth_tokens WHERE refresh_token_hash = %s RETURNING *",
                (refresh_token_hash,),
            )
            return _one(cur.fetchone(), lambda row: OAuthToken(**row), "Token")

        return self._run(_delete, "Failed to consume refresh token")

    def delete(self, token_id: str) -> Result[bool]:
        def _delete(cur: _Cursor) -> Result[bool]:
            cur.execute("DELETE FROM oauth_tokens WHERE token_id = %s", (token_id,))
            return Result.success(cur.rowcount > 0)

        return self._run(_delete, "Failed to delete token")

    def purge_expired(self, now: datetime) -> Result[int]:
        def _delete(cur: _Cursor) -> Result[int]:
            cur.execute("DELETE FROM oauth_tokens WHERE refresh_expires_at <= %s", (now,))
            return Result.success(cur.rowcount)

        return self._run(_delete, "Failed to purge tokens")


class PsycopgUserRepository(_PsycopgRepository):
    def upsert(self, user: User) -> Result[User]:
        def _upsert(cur: _Cursor) -> Result[User]:
            cur.execute(_UPSERT_USER, (user.id, user.name, user.email, user.created_at))
            return _one(cur.fetchone(), lambda row: User(**row), "User")

        return self._run(_upsert, "Failed to store user")

    def get(self, user_id: str) -> Result[User]:
        def _select(cur: _Cursor) -> Result[User]:
            cur.execute("SELECT * FROM users WHERE id = %s", (user_id,))
            return _one(cur.fetchone(), lambda row: User(**row), "User")

        return self._run(_select, "Failed to load user")


class PsycopgAuditTrail(_PsycopgRepository):
    def append(self, entry: AuditEntry) -> Result[AuditEntry]:
        def _insert(cur: _Cursor) -> Result[AuditEntry]:
            cur.execute(
                _INSERT_AUDIT,
                (
                    entry.id,
                    entry.action.value,
                    entry.user_id,
                    entry.client_id,
                    Jsonb(entry.details),
                    entry.ip_address,
                    entry.created_at,
                ),
            )
            return Result.success(entry)

        return self._run(_insert, "Failed to write audit entry")

    def recent(self, limit: int, offset: int = 0) -> Result[list[AuditEntry]]:
        def _select(cur: _Cursor) -> Result[list[AuditEntry]]:
            cur.execute(
                "SELECT * FROM audit_logs ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (limit, offset),
            )
            return Result.success([_to_audit(row) for row in cur.fetchall()])

        return self._run(_select, "Failed to read audit log")


def create_postgres_repositories(dsn: str) -> Repositories:
    return Repositories(
        ca=PsycopgCaRepository(dsn),
        certificates=PsycopgCertificateRepository(dsn),
        challenges=PsycopgChallengeRepository(dsn),
        codes=PsycopgAuthorizationCodeRepository(dsn),
        clients=PsycopgClientRepository(dsn),
        tokens=PsycopgTokenRepository(dsn),
        users=PsycopgUserRepository(dsn),
        audit=PsycopgAuditTrail(dsn),
    )

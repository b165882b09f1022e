"""
Unit tests for the in-memory repository adapters.

The PostgreSQL adapters are held to the same contract in
tests/integration/test_postgres_repository.py.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from railway import ErrorCode
from railway.assertions import ResultAssertions

from pki_auth.adapters.memory import create_memory_repositories
from pki_auth.domain.models import (
    AuthorizationCode,
    CaLevel,
    Certificate,
    CertificateAuthority,
    CertificateStatus,
    OAuthToken,
    User,
)
from pki_auth.domain.ports import (
    AuditTrail,
    AuthorizationCodeRepository,
    CaRepository,
    CertificateRepository,
    ChallengeRepository,
    ClientRepository,
    TokenRepository,
    UserRepository,
)

NOW = datetime(2026, 3, 1, tzinfo=UTC)


def _ca(level: CaLevel) -> CertificateAuthority:
    return CertificateAuthority(level, "cert", "key", f"serial-{level.value}", f"CN={level.value}", NOW, NOW + timedelta(days=365))


def _certificate(serial: str, created_at: datetime = NOW) -> Certificate:
    return Certificate(
        serial_number=serial,
        subject_dn="CN=Alice",
        issuer_dn="CN=Intermediate",
        common_name="Alice",
        not_before=NOW,
        not_after=NOW + timedelta(days=365),
        public_key_pem="pub",
        certificate_pem="pem",
        owner_user_id="user-1",
        created_at=created_at,
    )


class TestProtocolConformance:
    def test_memory_repositories_satisfy_ports(self) -> None:
        repos = create_memory_repositories()

        assert isinstance(repos.ca, CaRepository)
        assert isinstance(repos.certificates, CertificateRepository)
        assert isinstance(repos.challenges, ChallengeRepository)
        assert isinstance(repos.codes, AuthorizationCodeRepository)
        assert isinstance(repos.clients, ClientRepository)
        assert isinstance(repos.tokens, TokenRepository)
        assert isinstance(repos.users, UserRepository)
        assert isinstance(repos.audit, AuditTrail)


class TestCaRepository:
    def test_hierarchy_saved_once(self) -> None:
        ca = create_memory_repositories().ca
        ResultAssertions.assert_success(ca.save_hierarchy(_ca(CaLevel.ROOT), _ca(CaLevel.INTERMEDIATE)))

        second = ca.save_hierarchy(_ca(CaLevel.ROOT), _ca(CaLevel.INTERMEDIATE))

        ResultAssertions.assert_failure(second, ErrorCode.CONFLICT)
        assert ca.load(CaLevel.INTERMEDIATE).value().serial_number == "serial-INTERMEDIATE"

    def test_missing_level(self) -> None:
        ResultAssertions.assert_failure(create_memory_repositories().ca.load(CaLevel.ROOT), ErrorCode.NOT_FOUND)


class TestCertificateRepository:
    def test_duplicate_serial(self) -> None:
        certificates = create_memory_repositories().certificates
        certificates.add(_certificate("01"))

        ResultAssertions.assert_failure(certificates.add(_certificate("01")), ErrorCode.CONFLICT)

    def test_status_transitions_are_compare_and_set(self) -> None:
        """
        GIVEN an ACTIVE certificate
        WHEN it is renewed and then revoked
        THEN the renewal wins and the revocation conflicts, leaving no CRL entry.
        """
        certificates = create_memory_repositories().certificates
        certificates.add(_certificate("01"))

        ResultAssertions.assert_success(certificates.mark_renewed("01"))
        ResultAssertions.assert_failure(certificates.mark_renewed("01"), ErrorCode.CONFLICT)
        ResultAssertions.assert_failure(certificates.revoke("01", "unspecified", NOW), ErrorCode.CONFLICT)
        assert certificates.list_revocations().value() == []

    def test_revoke_flips_status_and_appends_entry(self) -> None:
        certificates = create_memory_repositories().certificates
        certificates.add(_certificate("01"))

        entry = ResultAssertions.assert_success(certificates.revoke("01", "keyCompromise", NOW))

        assert certificates.get("01").value().status is CertificateStatus.REVOKED
        assert certificates.find_revocation("01").value() == entry

    def test_list_for_user_newest_first(self) -> None:
        certificates = create_memory_repositories().certificates
        certificates.add(_certificate("01", NOW))
        certificates.add(_certificate("02", NOW + timedelta(days=1)))

        assert [c.serial_number for c in certificates.list_for_user("user-1").value()] == ["02", "01"]


class TestSingleUseRecords:
    def test_take_returns_once(self) -> None:
        codes = create_memory_repositories().codes
        codes.add(AuthorizationCode("c0de", "default", "user-1", "postmessage", "openid", NOW))

        ResultAssertions.assert_success(codes.take("c0de"))
        ResultAssertions.assert_failure(codes.take("c0de"), ErrorCode.NOT_FOUND)

    def test_refresh_take_removes_pair(self) -> None:
        tokens = create_memory_repositories().tokens
        tokens.add(OAuthToken("t1", "acc", "ref", "default", "user-1", "openid", NOW, NOW + timedelta(days=30)))

        ResultAssertions.assert_success(tokens.take_refresh("ref"))
        ResultAssertions.assert_failure(tokens.find("acc"), ErrorCode.NOT_FOUND)
        assert tokens.delete("t1").value() is False

    def test_token_purge_uses_refresh_expiry(self) -> None:
        tokens = create_memory_repositories().tokens
        tokens.add(OAuthToken("t1", "acc", "ref", "default", "user-1", "openid", NOW, NOW + timedelta(days=30)))

        assert tokens.purge_expired(NOW + timedelta(days=1)).value() == 0
        assert tokens.purge_expired(NOW + timedelta(days=30)).value() == 1


class TestUserRepository:
    def test_upsert_keeps_original_creation_time(self) -> None:
        users = create_memory_repositories().users
        users.upsert(User("user-1", "Alice", created_at=NOW))

        updated = users.upsert(User("user-1", "Alice Kim", "alice@example.com", NOW + timedelta(days=1))).value()

        assert (updated.name, updated.email, updated.created_at) == ("Alice Kim", "alice@example.com", NOW)

"""
Shared test fixtures and helpers for the pki-auth test suite.

Services are wired against the in-memory repositories with 2048-bit keys
(the minimum) for both CA and leaf certificates, and a controllable clock
so expiry can be exercised without sleeping.
"""

from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from pydantic import SecretStr

from pki_auth.adapters.memory import create_memory_repositories
from pki_auth.audit import AuditService
from pki_auth.authority import CertificateAuthorityService
from pki_auth.challenges import ChallengeService
from pki_auth.config import AppSettings, JwtSettings, SchedulerSettings
from pki_auth.domain.encoding import decode_base64
from pki_auth.domain.models import IssuedCertificate, SubjectInfo
from pki_auth.domain.ports import Repositories
from pki_auth.issuer import CertificateIssuer, Identity
from pki_auth.keys import KeyPairFactory
from pki_auth.main import Services, _create_services
from pki_auth.oauth import OAuth2AuthorizationServer
from pki_auth.signature import SignatureAuthenticator
from pki_auth.tokens import JwtCodec
from pki_auth.verifier import CertificateVerifier

JWT_SECRET = "test-jwt-secret-that-is-long-enough-0123456789"
ADMIN_SECRET = "test-admin-secret-0123"
PASSWORD = "correct-horse-battery"
ROOT_SUBJECT = SubjectInfo("Test Root CA", "2Check", "KR")
INTERMEDIATE_SUBJECT = SubjectInfo("Test Intermediate CA", "2Check", "KR")


class MutableClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(UTC).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def sign_challenge(private_key_pem: str, challenge: str) -> str:
    """What a certificate holder's client does: sign the decoded challenge bytes."""
    key = serialization.load_pem_private_key(private_key_pem.encode("ascii"), password=None)
    assert isinstance(key, rsa.RSAPrivateKey)
    signature = key.sign(decode_base64(challenge), padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode("ascii")


def make_settings(**overrides: object) -> AppSettings:
    values: dict[str, object] = {
        "jwt": JwtSettings(secret=SecretStr(JWT_SECRET), issuer="https://pki.test"),
        "admin_secret": SecretStr(ADMIN_SECRET),
        "storage": "memory",
        "scheduler": SchedulerSettings(enabled=False),
        "public_url": "https://pki.test",
    }
    values.update(overrides)
    return AppSettings(**values)  # type: ignore[arg-type]


# ─────────────────────── Building blocks ───────────────────────


@pytest.fixture()
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture()
def repositories() -> Repositories:
    return create_memory_repositories()


@pytest.fixture()
def key_factory(clock: MutableClock) -> KeyPairFactory:
    return KeyPairFactory(leaf_key_size=2048, ca_key_size=2048, clock=clock)


@pytest.fixture()
def audit(repositories: Repositories, clock: MutableClock) -> AuditService:
    return AuditService(repositories.audit, clock=clock)


@pytest.fixture()
def authority(
    repositories: Repositories, key_factory: KeyPairFactory, audit: AuditService, clock: MutableClock
) -> CertificateAuthorityService:
    return CertificateAuthorityService(repositories.ca, key_factory, audit, clock=clock)


@pytest.fixture()
def initialized_authority(authority: CertificateAuthorityService) -> CertificateAuthorityService:
    result = authority.initialize(ROOT_SUBJECT, INTERMEDIATE_SUBJECT)
    assert result.is_success(), result.error()
    return authority


@pytest.fixture()
def issuer(
    initialized_authority: CertificateAuthorityService,
    key_factory: KeyPairFactory,
    repositories: Repositories,
    audit: AuditService,
    clock: MutableClock,
) -> CertificateIssuer:
    return CertificateIssuer(
        initialized_authority,
        key_factory,
        repositories.certificates,
        repositories.users,
        audit,
        organization="2Check",
        country="KR",
        clock=clock,
    )


@pytest.fixture()
def verifier(
    initialized_authority: CertificateAuthorityService,
    repositories: Repositories,
    audit: AuditService,
    clock: MutableClock,
) -> CertificateVerifier:
    return CertificateVerifier(initialized_authority, repositories.certificates, audit, clock=clock)


@pytest.fixture()
def challenges(repositories: Repositories, clock: MutableClock) -> ChallengeService:
    return ChallengeService(repositories.challenges, ttl_seconds=300, clock=clock)


@pytest.fixture()
def signatures(
    challenges: ChallengeService, repositories: Repositories, audit: AuditService, clock: MutableClock
) -> SignatureAuthenticator:
    return SignatureAuthenticator(challenges, repositories.certificates, repositories.users, audit, clock=clock)


@pytest.fixture()
def codec() -> JwtCodec:
    return JwtCodec(JWT_SECRET, "https://pki.test")


@pytest.fixture()
def oauth(
    repositories: Repositories, codec: JwtCodec, audit: AuditService, clock: MutableClock
) -> OAuth2AuthorizationServer:
    return OAuth2AuthorizationServer(
        codes=repositories.codes,
        clients=repositories.clients,
        tokens=repositories.tokens,
        users=repositories.users,
        certificates=repositories.certificates,
        codec=codec,
        audit=audit,
        public_url="https://pki.test",
        default_redirect_uris=("postmessage", "https://app.test/callback"),
        clock=clock,
    )


@pytest.fixture()
def issued(issuer: CertificateIssuer) -> IssuedCertificate:
    """A certificate for user-1 ("Alice"), issued from the initialized CA."""
    result = issuer.issue(Identity("Alice", "user-1", "alice@example.com"), PASSWORD)
    assert result.is_success(), result.error()
    return result.value()


@pytest.fixture()
def services() -> Services:
    """Fully wired in-memory services, CA not yet initialized."""
    return _create_services(make_settings(ca={"ca_key_size": 2048}), create_memory_repositories())

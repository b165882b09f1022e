"""
Application entry point — wires dependencies and starts the HTTP server.

Composition root: creates the concrete repositories, injects them into the
services, and hands the services to the ASGI application.

This is the ONLY place where concrete classes are instantiated.
Everything else depends on Protocol interfaces.

Responsibilities:
  1. Configure structlog for structured logging
  2. Load and validate configuration from environment
  3. Create the repositories (PostgreSQL or in-memory)
  4. Create the services (CA, issuer, verifier, login, OAuth2)
  5. Run uvicorn with the pki_auth.asgi:create_app factory
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass

import structlog
from railway.result import Result

from pki_auth.adapters.memory import create_memory_repositories
from pki_auth.adapters.repository import create_postgres_repositories, ensure_schema
from pki_auth.audit import AuditService
from pki_auth.authority import CertificateAuthorityService
from pki_auth.challenges import ChallengeService
from pki_auth.config import AppSettings
from pki_auth.domain.models import CertificateAuthority, SubjectInfo
from pki_auth.domain.ports import Repositories
from pki_auth.issuer import CertificateIssuer
from pki_auth.keys import KeyPairFactory
from pki_auth.oauth import OAuth2AuthorizationServer
from pki_auth.signature import SignatureAuthenticator
from pki_auth.tokens import JwtCodec
from pki_auth.verifier import CertificateVerifier

log = structlog.get_logger()


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for structured, JSON-formatted logging.

    In production: JSON lines to stdout (machine-readable).
    In development: colored, human-readable console output.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@dataclass(frozen=True, slots=True)
class Services:
    """Everything the HTTP layer and the cleanup job need."""

    settings: AppSettings
    repositories: Repositories
    audit: AuditService
    authority: CertificateAuthorityService
    issuer: CertificateIssuer
    verifier: CertificateVerifier
    challenges: ChallengeService
    signatures: SignatureAuthenticator
    oauth: OAuth2AuthorizationServer

    def initialize_ca(
        self, ip_address: str | None = None
    ) -> Result[tuple[CertificateAuthority, CertificateAuthority]]:
        ca = self.settings.ca
        return self.authority.initialize(
            root_subject=SubjectInfo(ca.root_common_name, ca.organization, ca.country),
            intermediate_subject=SubjectInfo(ca.intermediate_common_name, ca.organization, ca.country),
            root_validity_years=ca.root_validity_years,
            intermediate_validity_years=ca.intermediate_validity_years,
            ip_address=ip_address,
        )

    def purge_expired(self) -> Result[int]:
        """Delete expired challenges, authorization codes and tokens."""
        return Result.combine(
            self.challenges.purge_expired(),
            self.oauth.purge_expired(),
            lambda challenges, oauth_records: challenges + oauth_records,
        )


def _create_repositories(settings: AppSettings) -> Repositories:
    """
    PostgreSQL repositories (schema created on first start) or the in-memory set.

    Raises RuntimeError when the schema cannot be created, so startup fails.
    """
    if settings.storage == "memory":
        log.warning("app.memory_storage", detail="state is lost on restart")
        return create_memory_repositories()

    assert settings.database is not None  # guaranteed by AppSettings validator
    dsn = settings.database.get_dsn()
    schema = ensure_schema(dsn)
    if schema.is_failure():
        raise RuntimeError(f"Database schema setup failed: {schema.error().message}")
    return create_postgres_repositories(dsn)


def _create_services(settings: AppSettings, repositories: Repositories | None = None) -> Services:
    """Instantiate all services from application settings."""
    repos = repositories if repositories is not None else _create_repositories(settings)
    ca_settings = settings.ca

    audit = AuditService(repos.audit)
    key_factory = KeyPairFactory(
        leaf_key_size=ca_settings.leaf_key_size,
        ca_key_size=ca_settings.ca_key_size,
    )
    passphrase = ca_settings.key_passphrase.get_secret_value() if ca_settings.key_passphrase else None
    authority = CertificateAuthorityService(repos.ca, key_factory, audit, key_passphrase=passphrase)
    issuer = CertificateIssuer(
        authority,
        key_factory,
        repos.certificates,
        repos.users,
        audit,
        organization=ca_settings.organization,
        country=ca_settings.country,
        legacy_pkcs12=ca_settings.legacy_pkcs12,
    )
    challenges = ChallengeService(repos.challenges, ttl_seconds=settings.challenge.ttl_seconds)
    signatures = SignatureAuthenticator(
        challenges,
        repos.certificates,
        repos.users,
        audit,
        consume_on_failure=settings.challenge.consume_on_failure,
    )
    codec = JwtCodec(settings.jwt.secret.get_secret_value(), settings.jwt.issuer)
    oauth = OAuth2AuthorizationServer(
        codes=repos.codes,
        clients=repos.clients,
        tokens=repos.tokens,
        users=repos.users,
        certificates=repos.certificates,
        codec=codec,
        audit=audit,
        public_url=settings.public_url,
        login_url=settings.oauth.login_path,
        default_redirect_uris=settings.oauth.default_client_redirect_uris,
        access_token_ttl_seconds=settings.jwt.access_token_ttl_seconds,
        refresh_token_ttl_seconds=settings.jwt.refresh_token_ttl_seconds,
        code_ttl_seconds=settings.oauth.code_ttl_seconds,
        authoritative_introspection=settings.oauth.authoritative_introspection,
    )
    return Services(
        settings=settings,
        repositories=repos,
        audit=audit,
        authority=authority,
        issuer=issuer,
        verifier=CertificateVerifier(authority, repos.certificates, audit),
        challenges=challenges,
        signatures=signatures,
        oauth=oauth,
    )


def main() -> None:
    """Validate configuration and serve the pki_auth.asgi application factory with uvicorn."""
    try:
        settings = AppSettings()
    except Exception as e:
        print(f"FATAL: Configuration error — {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level)

    log.info(
        "app.starting",
        version="0.1.0",
        log_level=settings.log_level,
        storage=settings.storage,
        public_url=settings.public_url,
    )

    import uvicorn

    uvicorn.run(
        "pki_auth.asgi:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()

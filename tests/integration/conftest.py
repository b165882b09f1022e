"""
Integration test fixtures — PostgreSQL testcontainer and schema setup.

Provides a real PostgreSQL instance for each test session via testcontainers.
The production schema is created with ensure_schema(), the same call the
service makes at startup. Each test gets a clean database via truncation.
"""

from __future__ import annotations

from collections.abc import Iterator

import psycopg
import pytest
from testcontainers.postgres import PostgresContainer

from pki_auth.adapters.repository import create_postgres_repositories, ensure_schema
from pki_auth.domain.ports import Repositories

TRUNCATE_ALL = """
TRUNCATE revoked_certificates, certificates, certificate_authorities, users, challenges,
         authorization_codes, oauth_clients, oauth_tokens, audit_logs CASCADE;
"""


def _psycopg_dsn(container: PostgresContainer) -> str:
    return container.get_connection_url().replace("postgresql+psycopg2", "postgresql")


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Start a PostgreSQL container for the entire test session."""
    with PostgresContainer("postgres:16-alpine") as pg:
        result = ensure_schema(_psycopg_dsn(pg))
        assert result.is_success(), result.error()
        yield pg


@pytest.fixture()
def dsn(postgres_container: PostgresContainer) -> str:
    """Return a psycopg-compatible DSN and truncate all tables before each test."""
    connection_url = _psycopg_dsn(postgres_container)
    with psycopg.connect(connection_url) as conn:
        conn.execute(TRUNCATE_ALL)
        conn.commit()
    return connection_url


@pytest.fixture()
def pg_repositories(dsn: str) -> Repositories:
    return create_postgres_repositories(dsn)

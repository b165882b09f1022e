"""
Acceptance test fixtures — the whole application behind a TestClient.

Scenarios run against the in-memory store so they need no Docker; the
PostgreSQL adapters are covered by the integration suite.
"""

from __future__ import annotations

import base64
from collections.abc import Iterator

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from fastapi.testclient import TestClient

from pki_auth.adapters.memory import create_memory_repositories
from pki_auth.asgi import create_app
from pki_auth.main import _create_services
from tests.conftest import ADMIN_SECRET, PASSWORD, make_settings

ADMIN_HEADERS = {"X-Admin-Secret": ADMIN_SECRET}


def holder_key_pem(p12_base64: str, password: str = PASSWORD) -> str:
    """What the certificate holder's client does: open the PKCS#12 and take the key out."""
    key, _, _ = pkcs12.load_key_and_certificates(base64.b64decode(p12_base64), password.encode("utf-8"))
    assert key is not None
    return key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    ).decode("ascii")


@pytest.fixture()
def app_client() -> Iterator[TestClient]:
    """Running application (lifespan included) with an initialized CA."""
    settings = make_settings(
        ca={"ca_key_size": 2048},
        oauth={"default_client_redirect_uris": ["postmessage", "https://app.test/callback"]},
    )
    services = _create_services(settings, create_memory_repositories())
    with TestClient(create_app(services=services)) as client:
        response = client.post("/admin/ca/init", headers=ADMIN_HEADERS)
        assert response.status_code == 201, response.text
        yield client

"""
Unit tests for the relying-party HTTP client.

Uses respx to mock httpx HTTP calls (never makes real HTTP requests).

Test categories:
  - Success: correct response → Result.success
  - OAuth error body (4xx) → mapped ErrorCode with the server's description
  - Server error / malformed body → EXTERNAL_SERVICE_ERROR
  - Timeout after retries → TIMEOUT_ERROR (never raises)
"""

from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest
import respx
from railway import ErrorCode, ResultAssertions

from pki_auth.adapters.oauth_client import HttpOAuthClient, new_pkce_pair
from pki_auth.domain.encoding import pkce_s256
from tests.conftest import make_settings

# ─────────────────────── Fixtures ───────────────────────

BASE_URL = "https://pki.example.com"
TOKEN_URL = f"{BASE_URL}/oauth/token"
TOKEN_BODY = {
    "access_token": "access",
    "token_type": "Bearer",
    "expires_in": 3600,
    "refresh_token": "refresh",
    "scope": "openid profile email",
    "id_token": "id",
}


@pytest.fixture()
def client() -> HttpOAuthClient:
    return HttpOAuthClient(BASE_URL, client_id="partner", client_secret="s3cret", redirect_uri="https://app/cb", timeout=5)


def _form(route: respx.Route) -> dict[str, list[str]]:
    return parse_qs(route.calls.last.request.content.decode("ascii"))


# ─────────────────────── Token endpoint ───────────────────────


class TestExchangeCode:
    @respx.mock
    def test_success(self, client: HttpOAuthClient) -> None:
        """
        GIVEN the token endpoint answers 200 with a token body
        WHEN a code is exchanged with a PKCE verifier
        THEN the TokenResponse is returned AND the form carries every parameter.
        """
        route = respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json=TOKEN_BODY))

        tokens = ResultAssertions.assert_success(client.exchange_code("the-code", "the-verifier"))

        assert (tokens.access_token, tokens.refresh_token, tokens.id_token) == ("access", "refresh", "id")
        form = _form(route)
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["the-code"]
        assert form["redirect_uri"] == ["https://app/cb"]
        assert form["client_id"] == ["partner"]
        assert form["client_secret"] == ["s3cret"]
        assert form["code_verifier"] == ["the-verifier"]

    @respx.mock
    def test_invalid_grant(self, client: HttpOAuthClient) -> None:
        respx.post(TOKEN_URL).mock(
            return_value=httpx.Response(
                400, json={"error": "invalid_grant", "error_description": "PKCE verification failed"}
            )
        )

        result = client.exchange_code("the-code", "wrong")

        error = ResultAssertions.assert_failure(result, ErrorCode.INVALID_GRANT)
        assert error.message == "PKCE verification failed"

    @respx.mock
    def test_invalid_client(self, client: HttpOAuthClient) -> None:
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(401, json={"error": "invalid_client"}))

        ResultAssertions.assert_failure(client.exchange_code("the-code"), ErrorCode.INVALID_CLIENT)

    @respx.mock
    def test_server_error(self, client: HttpOAuthClient) -> None:
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(500, json={"error": "server_error"}))

        result = client.exchange_code("the-code")

        error = ResultAssertions.assert_failure(result, ErrorCode.EXTERNAL_SERVICE_ERROR)
        assert "HTTP 500" in error.message

    @respx.mock
    def test_malformed_body(self, client: HttpOAuthClient) -> None:
        respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json={"token_type": "Bearer"}))

        ResultAssertions.assert_failure(client.exchange_code("the-code"), ErrorCode.EXTERNAL_SERVICE_ERROR)

    @respx.mock
    def test_timeout_after_retries(self, client: HttpOAuthClient) -> None:
        """
        GIVEN a token endpoint that always times out
        WHEN a code is exchanged
        THEN three attempts are made AND TIMEOUT_ERROR is returned (never raises).
        """
        route = respx.post(TOKEN_URL).mock(side_effect=httpx.ConnectTimeout("timed out"))

        result = client.exchange_code("the-code")

        ResultAssertions.assert_failure(result, ErrorCode.TIMEOUT_ERROR)
        assert route.call_count == 3

    @respx.mock
    def test_transient_network_error_is_retried(self, client: HttpOAuthClient) -> None:
        route = respx.post(TOKEN_URL).mock(
            side_effect=[httpx.ConnectError("refused"), httpx.Response(200, json=TOKEN_BODY)]
        )

        ResultAssertions.assert_success(client.exchange_code("the-code"))
        assert route.call_count == 2


class TestRefresh:
    @respx.mock
    def test_sends_refresh_grant(self, client: HttpOAuthClient) -> None:
        route = respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json=TOKEN_BODY))

        ResultAssertions.assert_success(client.refresh("old-refresh"))

        form = _form(route)
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["old-refresh"]

    @respx.mock
    def test_public_client_sends_no_secret(self) -> None:
        route = respx.post(TOKEN_URL).mock(return_value=httpx.Response(200, json=TOKEN_BODY))

        HttpOAuthClient(BASE_URL, client_id="default").refresh("old-refresh")

        assert "client_secret" not in _form(route)


# ─────────────────────── Introspection & userinfo ───────────────────────


class TestIntrospectAndUserinfo:
    @respx.mock
    def test_introspect(self, client: HttpOAuthClient) -> None:
        respx.post(f"{BASE_URL}/oauth/introspect").mock(
            return_value=httpx.Response(200, json={"active": True, "sub": "user-1"})
        )

        answer = ResultAssertions.assert_success(client.introspect("access"))

        assert answer == {"active": True, "sub": "user-1"}

    @respx.mock
    def test_userinfo_sends_bearer(self, client: HttpOAuthClient) -> None:
        route = respx.get(f"{BASE_URL}/oauth/userinfo").mock(
            return_value=httpx.Response(200, json={"sub": "user-1", "name": "Alice"})
        )

        profile = ResultAssertions.assert_success(client.userinfo("access"))

        assert profile["name"] == "Alice"
        assert route.calls.last.request.headers["Authorization"] == "Bearer access"

    @respx.mock
    def test_userinfo_invalid_token(self, client: HttpOAuthClient) -> None:
        respx.get(f"{BASE_URL}/oauth/userinfo").mock(
            return_value=httpx.Response(401, json={"error": "invalid_token", "error_description": "Token expired"})
        )

        error = ResultAssertions.assert_failure(client.userinfo("access"), ErrorCode.UNAUTHORIZED)

        assert error.message == "Token expired"


class TestPkcePair:
    def test_challenge_matches_verifier(self) -> None:
        verifier, challenge = new_pkce_pair()

        assert 43 <= len(verifier) <= 128
        assert challenge == pkce_s256(verifier)


class TestFromSettings:
    @respx.mock
    def test_uses_public_url_and_configured_timeout(self) -> None:
        """
        GIVEN settings with a public URL and HTTP_TIMEOUT_SECONDS=7
        WHEN a client built from them introspects a token
        THEN the request goes to that URL with a 7 second timeout.
        """
        client = HttpOAuthClient.from_settings(
            make_settings(public_url=BASE_URL, http_timeout_seconds=7), client_id="partner"
        )
        route = respx.post(f"{BASE_URL}/oauth/introspect").mock(
            return_value=httpx.Response(200, json={"active": False})
        )

        ResultAssertions.assert_success(client.introspect("token"))

        assert route.calls.last.request.extensions["timeout"] == {
            "connect": 7,
            "read": 7,
            "write": 7,
            "pool": 7,
        }

"""
Unit tests for the OAuth2 authorization server: authorization requests,
code minting, the token endpoint (code + PKCE, refresh rotation),
introspection, revocation, userinfo and metadata.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from urllib.parse import parse_qs, urlsplit

import pytest
from railway import ErrorCode
from railway.assertions import ResultAssertions

from pki_auth.domain.encoding import pkce_s256, sha256_hex
from pki_auth.domain.models import (
    AuditAction,
    AuthorizationCode,
    IssuedCertificate,
    RegisteredClient,
    TokenResponse,
    User,
)
from pki_auth.domain.ports import Repositories
from pki_auth.oauth import AuthorizationRequest, OAuth2AuthorizationServer, TokenRequest
from pki_auth.tokens import JwtCodec
from tests.conftest import MutableClock

VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
CALLBACK = "https://app.test/callback"


@pytest.fixture()
def user(repositories: Repositories) -> User:
    return repositories.users.upsert(User("user-1", "Alice", "alice@example.com")).value()


@pytest.fixture()
def client(oauth: OAuth2AuthorizationServer) -> RegisteredClient:
    return oauth.register_client("Partner app", ["https://partner.test/cb"]).value()


@pytest.fixture()
def pkce_code(oauth: OAuth2AuthorizationServer, user: User) -> AuthorizationCode:
    return oauth.create_authorization_code(
        user.id, "default", CALLBACK, code_challenge=pkce_s256(VERIFIER), code_challenge_method="S256"
    ).value()


@pytest.fixture()
def tokens(oauth: OAuth2AuthorizationServer, pkce_code: AuthorizationCode) -> TokenResponse:
    return oauth.exchange_token(
        TokenRequest("authorization_code", pkce_code.code, CALLBACK, "default", code_verifier=VERIFIER)
    ).value()


def _code_request(code: AuthorizationCode, **overrides: str | None) -> TokenRequest:
    values: dict[str, str | None] = {
        "grant_type": "authorization_code",
        "code": code.code,
        "redirect_uri": code.redirect_uri,
        "client_id": code.client_id,
        "code_verifier": VERIFIER,
    }
    values.update(overrides)
    return TokenRequest(**values)  # type: ignore[arg-type]


# ─────────────────────── Clients ───────────────────────


class TestClients:
    def test_register_returns_secret_once(
        self, client: RegisteredClient, repositories: Repositories
    ) -> None:
        """
        GIVEN a newly registered client
        WHEN it is read back from storage
        THEN only the SHA-256 of its secret is stored.
        """
        stored = repositories.clients.get(client.client.client_id).value()

        assert stored.client_secret_hash == sha256_hex(client.client_secret)
        assert client.client_secret not in repr(stored)
        assert stored.redirect_uris == ("https://partner.test/cb",)

    def test_register_requires_name_and_uris(self, oauth: OAuth2AuthorizationServer) -> None:
        for name, uris in (("", ["https://x"]), ("App", []), ("App", [""])):
            error = ResultAssertions.assert_failure(oauth.register_client(name, uris), ErrorCode.INVALID_REQUEST)
            assert error.message == "Name and redirectUris are required"

    def test_default_client_is_builtin(self, oauth: OAuth2AuthorizationServer) -> None:
        default = ResultAssertions.assert_success(oauth.validate_client("default"))

        assert default.redirect_uris == ("postmessage", CALLBACK)

    def test_unknown_client(self, oauth: OAuth2AuthorizationServer) -> None:
        ResultAssertions.assert_failure(oauth.validate_client("nope"), ErrorCode.NOT_FOUND)


# ─────────────────────── Authorization ───────────────────────


class TestAuthorize:
    def test_redirects_to_login_with_parameters(self, oauth: OAuth2AuthorizationServer) -> None:
        """
        GIVEN a valid authorization request with PKCE
        WHEN it is authorized
        THEN the user agent is sent to the certificate login UI with every parameter carried over.
        """
        location = ResultAssertions.assert_success(
            oauth.authorize(AuthorizationRequest("default", CALLBACK, "code", "openid", "xyz", "abc"))
        )

        parts = urlsplit(location)
        params = parse_qs(parts.query)
        assert parts.path == "/auth/certificate"
        assert params["client_id"] == ["default"]
        assert params["redirect_uri"] == [CALLBACK]
        assert params["state"] == ["xyz"]
        assert params["code_challenge_method"] == ["S256"]

    @pytest.mark.parametrize(
        ("request_", "code", "message"),
        [
            (AuthorizationRequest(None, CALLBACK, "code"), ErrorCode.INVALID_REQUEST, "Missing required parameters"),
            (AuthorizationRequest("default", CALLBACK, "token"), ErrorCode.INVALID_REQUEST, "response_type must be 'code'"),
            (AuthorizationRequest("default", "https://evil.test", "code"), ErrorCode.INVALID_REQUEST, "Invalid redirect_uri"),
            (AuthorizationRequest("ghost", CALLBACK, "code"), ErrorCode.INVALID_CLIENT, "Unknown client"),
        ],
    )
    def test_rejections(
        self, oauth: OAuth2AuthorizationServer, request_: AuthorizationRequest, code: ErrorCode, message: str
    ) -> None:
        error = ResultAssertions.assert_failure(oauth.authorize(request_), code)

        assert error.message == message

    def test_unsupported_pkce_method(self, oauth: OAuth2AuthorizationServer) -> None:
        request = AuthorizationRequest("default", CALLBACK, "code", code_challenge="abc", code_challenge_method="S512")

        ResultAssertions.assert_failure(oauth.authorize(request), ErrorCode.INVALID_REQUEST)


class TestCreateAuthorizationCode:
    def test_code_fields(self, pkce_code: AuthorizationCode, clock: MutableClock) -> None:
        assert len(pkce_code.code) == 64
        assert pkce_code.scope == "openid profile email"
        assert pkce_code.code_challenge_method == "S256"
        assert (pkce_code.expires_at - clock.now).total_seconds() == 600

    def test_unknown_user(self, oauth: OAuth2AuthorizationServer) -> None:
        error = ResultAssertions.assert_failure(
            oauth.create_authorization_code("ghost", "default", CALLBACK), ErrorCode.INVALID_REQUEST
        )

        assert error.message == "Invalid user"

    def test_redirect_must_be_registered(self, oauth: OAuth2AuthorizationServer, user: User) -> None:
        result = oauth.create_authorization_code(user.id, "default", "https://evil.test")

        ResultAssertions.assert_failure(result, ErrorCode.INVALID_REQUEST)

    def test_missing_user_id(self, oauth: OAuth2AuthorizationServer) -> None:
        error = ResultAssertions.assert_failure(
            oauth.create_authorization_code("", "default", CALLBACK), ErrorCode.INVALID_REQUEST
        )

        assert error.message == "userId is required"

    def test_audited(self, pkce_code: AuthorizationCode, repositories: Repositories) -> None:
        latest = repositories.audit.recent(1).value()[0]

        assert (latest.action, latest.client_id) == (AuditAction.AUTHORIZATION_CODE_CREATED, "default")


# ─────────────────────── authorization_code grant ───────────────────────


class TestCodeExchange:
    def test_issues_tokens(self, tokens: TokenResponse, codec: JwtCodec) -> None:
        """
        GIVEN a code created with an S256 challenge
        WHEN it is exchanged with the matching verifier
        THEN an access token, refresh token and ID token are issued for the user.
        """
        claims = codec.decode(tokens.access_token).value()

        assert claims["sub"] == "user-1"
        assert claims["client_id"] == "default"
        assert claims["iss"] == "https://pki.test"
        assert tokens.expires_in == 3600
        assert tokens.token_type == "Bearer"
        assert tokens.id_token is not None
        assert codec.decode(tokens.id_token).value()["aud"] == "default"

    def test_only_hashes_are_stored(self, tokens: TokenResponse, repositories: Repositories) -> None:
        record = ResultAssertions.assert_success(repositories.tokens.find(sha256_hex(tokens.refresh_token)))

        assert record.access_token_hash == sha256_hex(tokens.access_token)

    def test_code_is_single_use(
        self, oauth: OAuth2AuthorizationServer, pkce_code: AuthorizationCode, tokens: TokenResponse
    ) -> None:
        error = ResultAssertions.assert_failure(
            oauth.exchange_token(_code_request(pkce_code)), ErrorCode.INVALID_GRANT
        )

        assert error.message == "Invalid authorization code"

    def test_concurrent_exchanges_one_wins(
        self, oauth: OAuth2AuthorizationServer, pkce_code: AuthorizationCode, repositories: Repositories
    ) -> None:
        """
        GIVEN one PKCE-bound code
        WHEN eight threads exchange it with the right verifier at once
        THEN exactly one gets tokens AND every other exchange fails with INVALID_GRANT.
        """
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: oauth.exchange_token(_code_request(pkce_code)), range(8)))

        winners = [r for r in results if r.is_success()]
        assert len(winners) == 1
        assert {r.error().code for r in results if r.is_failure()} == {ErrorCode.INVALID_GRANT}
        ResultAssertions.assert_failure(repositories.codes.get(pkce_code.code), ErrorCode.NOT_FOUND)

    def test_wrong_verifier(self, oauth: OAuth2AuthorizationServer, pkce_code: AuthorizationCode) -> None:
        """
        GIVEN a PKCE-bound code
        WHEN it is exchanged with a different verifier
        THEN the grant is rejected AND the code is still redeemable.
        """
        result = oauth.exchange_token(_code_request(pkce_code, code_verifier="x" * 43))

        error = ResultAssertions.assert_failure(result, ErrorCode.INVALID_GRANT)
        assert error.message == "PKCE verification failed"
        ResultAssertions.assert_success(oauth.exchange_token(_code_request(pkce_code)))

    def test_missing_verifier(self, oauth: OAuth2AuthorizationServer, pkce_code: AuthorizationCode) -> None:
        error = ResultAssertions.assert_failure(
            oauth.exchange_token(_code_request(pkce_code, code_verifier=None)), ErrorCode.INVALID_REQUEST
        )

        assert error.message == "code_verifier required"

    def test_plain_method(self, oauth: OAuth2AuthorizationServer, user: User) -> None:
        code = oauth.create_authorization_code(
            user.id, "default", CALLBACK, code_challenge=VERIFIER, code_challenge_method="plain"
        ).value()

        ResultAssertions.assert_success(oauth.exchange_token(_code_request(code)))

    def test_expired_code(
        self, oauth: OAuth2AuthorizationServer, pkce_code: AuthorizationCode, clock: MutableClock
    ) -> None:
        clock.advance(minutes=11)

        error = ResultAssertions.assert_failure(oauth.exchange_token(_code_request(pkce_code)), ErrorCode.INVALID_GRANT)

        assert error.message == "Authorization code expired"

    def test_redirect_uri_must_match(self, oauth: OAuth2AuthorizationServer, pkce_code: AuthorizationCode) -> None:
        result = oauth.exchange_token(_code_request(pkce_code, redirect_uri="https://other.test/cb"))

        error = ResultAssertions.assert_failure(result, ErrorCode.INVALID_GRANT)
        assert error.message == "redirect_uri does not match"

    def test_postmessage_code_skips_redirect_check(self, oauth: OAuth2AuthorizationServer, user: User) -> None:
        code = oauth.create_authorization_code(user.id, "default", "postmessage").value()

        ResultAssertions.assert_success(oauth.exchange_token(_code_request(code, redirect_uri=None)))

    def test_code_bound_to_client(
        self, oauth: OAuth2AuthorizationServer, client: RegisteredClient, user: User
    ) -> None:
        """
        GIVEN a code minted for a registered client
        WHEN another client id presents it
        THEN the grant is rejected.
        """
        code = oauth.create_authorization_code(user.id, client.client.client_id, "https://partner.test/cb").value()

        result = oauth.exchange_token(_code_request(code, client_id="default"))

        error = ResultAssertions.assert_failure(result, ErrorCode.INVALID_GRANT)
        assert error.message == "Authorization code was issued to another client"

    def test_confidential_client_needs_secret(
        self, oauth: OAuth2AuthorizationServer, client: RegisteredClient, user: User
    ) -> None:
        code = oauth.create_authorization_code(user.id, client.client.client_id, "https://partner.test/cb").value()

        bad = oauth.exchange_token(_code_request(code, client_secret="wrong"))
        ResultAssertions.assert_failure(bad, ErrorCode.INVALID_CLIENT_CREDENTIALS)

        good = oauth.exchange_token(_code_request(code, client_secret=client.client_secret))
        ResultAssertions.assert_success(good)

    def test_missing_code(self, oauth: OAuth2AuthorizationServer) -> None:
        error = ResultAssertions.assert_failure(
            oauth.exchange_token(TokenRequest("authorization_code", client_id="default")), ErrorCode.INVALID_REQUEST
        )

        assert error.message == "code and client_id are required"

    def test_unsupported_grant_type(self, oauth: OAuth2AuthorizationServer) -> None:
        error = ResultAssertions.assert_failure(
            oauth.exchange_token(TokenRequest("password")), ErrorCode.UNSUPPORTED_GRANT_TYPE
        )

        assert error.message == "Unsupported grant_type: password"

    def test_scope_without_openid_has_no_id_token(self, oauth: OAuth2AuthorizationServer, user: User) -> None:
        code = oauth.create_authorization_code(user.id, "default", CALLBACK, scope="profile").value()

        response = oauth.exchange_token(_code_request(code)).value()

        assert response.id_token is None
        assert response.scope == "profile"


# ─────────────────────── refresh_token grant ───────────────────────


class TestRefresh:
    def test_rotation(self, oauth: OAuth2AuthorizationServer, tokens: TokenResponse) -> None:
        """
        GIVEN a token pair
        WHEN the refresh token is used
        THEN a new pair is issued, the old refresh token is dead,
        AND the old access token no longer introspects as active.
        """
        refreshed = ResultAssertions.assert_success(
            oauth.exchange_token(TokenRequest("refresh_token", client_id="default", refresh_token=tokens.refresh_token))
        )

        assert refreshed.refresh_token != tokens.refresh_token
        replay = oauth.exchange_token(
            TokenRequest("refresh_token", client_id="default", refresh_token=tokens.refresh_token)
        )
        ResultAssertions.assert_failure(replay, ErrorCode.INVALID_GRANT)
        assert oauth.introspect(tokens.access_token) == {"active": False}
        assert oauth.introspect(refreshed.access_token)["active"] is True

    def test_access_token_is_not_a_refresh_token(
        self, oauth: OAuth2AuthorizationServer, tokens: TokenResponse
    ) -> None:
        result = oauth.exchange_token(
            TokenRequest("refresh_token", client_id="default", refresh_token=tokens.access_token)
        )

        error = ResultAssertions.assert_failure(result, ErrorCode.INVALID_GRANT)
        assert error.message == "Invalid refresh token"

    def test_expired_refresh_token(
        self, oauth: OAuth2AuthorizationServer, tokens: TokenResponse, clock: MutableClock
    ) -> None:
        clock.advance(days=31)

        result = oauth.exchange_token(
            TokenRequest("refresh_token", client_id="default", refresh_token=tokens.refresh_token)
        )

        ResultAssertions.assert_failure(result, ErrorCode.INVALID_GRANT)

    def test_requires_parameters(self, oauth: OAuth2AuthorizationServer) -> None:
        result = oauth.exchange_token(TokenRequest("refresh_token", client_id="default"))

        ResultAssertions.assert_failure(result, ErrorCode.INVALID_REQUEST)


# ─────────────────────── Introspection & revocation ───────────────────────


class TestIntrospect:
    def test_active_access_token(self, oauth: OAuth2AuthorizationServer, tokens: TokenResponse) -> None:
        answer = oauth.introspect(tokens.access_token)

        assert answer["active"] is True
        assert (answer["sub"], answer["client_id"], answer["token_type"]) == ("user-1", "default", "Bearer")

    def test_active_refresh_token(self, oauth: OAuth2AuthorizationServer, tokens: TokenResponse) -> None:
        answer = oauth.introspect(tokens.refresh_token)

        assert (answer["active"], answer["token_type"]) == (True, "refresh_token")

    @pytest.mark.parametrize("token", [None, "", "garbage", "a.b.c"])
    def test_inactive(self, oauth: OAuth2AuthorizationServer, token: str | None) -> None:
        assert oauth.introspect(token) == {"active": False}

    def test_token_signed_with_other_secret(self, oauth: OAuth2AuthorizationServer) -> None:
        forged = JwtCodec("another-secret-entirely-0123456789", "https://pki.test").encode({"sub": "user-1"})

        assert oauth.introspect(forged) == {"active": False}


class TestRevoke:
    def test_revoking_access_token_kills_the_pair(
        self, oauth: OAuth2AuthorizationServer, tokens: TokenResponse
    ) -> None:
        assert oauth.revoke(tokens.access_token).value() is True

        assert oauth.introspect(tokens.access_token) == {"active": False}
        assert oauth.introspect(tokens.refresh_token) == {"active": False}

    def test_unknown_token_is_not_an_error(self, oauth: OAuth2AuthorizationServer) -> None:
        assert ResultAssertions.assert_success(oauth.revoke("never-issued")) is False

    def test_token_required(self, oauth: OAuth2AuthorizationServer) -> None:
        ResultAssertions.assert_failure(oauth.revoke(""), ErrorCode.INVALID_REQUEST)


# ─────────────────────── Userinfo & metadata ───────────────────────


class TestUserinfo:
    def test_profile_with_latest_certificate(
        self, oauth: OAuth2AuthorizationServer, issued: IssuedCertificate, tokens: TokenResponse
    ) -> None:
        profile = ResultAssertions.assert_success(oauth.userinfo(tokens.access_token))

        assert (profile["sub"], profile["name"], profile["email"]) == ("user-1", "Alice", "alice@example.com")
        assert profile["certificate_serial_number"] == issued.serial_number
        assert profile["certificate_status"] == "ACTIVE"

    def test_user_without_certificate(self, oauth: OAuth2AuthorizationServer, tokens: TokenResponse) -> None:
        profile = oauth.userinfo(tokens.access_token).value()

        assert profile["certificate_serial_number"] is None

    def test_missing_token(self, oauth: OAuth2AuthorizationServer) -> None:
        error = ResultAssertions.assert_failure(oauth.userinfo(None), ErrorCode.UNAUTHORIZED)

        assert error.message == "Missing Bearer token"

    def test_revoked_token(self, oauth: OAuth2AuthorizationServer, tokens: TokenResponse) -> None:
        oauth.revoke(tokens.access_token)

        ResultAssertions.assert_failure(oauth.userinfo(tokens.access_token), ErrorCode.UNAUTHORIZED)


class TestMetadataAndHousekeeping:
    def test_metadata_endpoints(self, oauth: OAuth2AuthorizationServer) -> None:
        metadata = oauth.metadata()

        assert metadata["issuer"] == "https://pki.test"
        assert metadata["token_endpoint"] == "https://pki.test/oauth/token"
        assert metadata["code_challenge_methods_supported"] == ["S256"]
        assert metadata["grant_types_supported"] == ["authorization_code", "refresh_token"]

    def test_purge_counts_codes_and_tokens(
        self,
        oauth: OAuth2AuthorizationServer,
        user: User,
        tokens: TokenResponse,
        clock: MutableClock,
    ) -> None:
        oauth.create_authorization_code(user.id, "default", CALLBACK)
        clock.advance(days=31)

        assert oauth.purge_expired().value() == 2

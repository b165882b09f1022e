"""
OAuth2 authorization server — authorization-code flow with PKCE.

Authentication of the end user is the certificate signature login: the
authorize endpoint only sends the user agent to the certificate login UI,
and an authorization code is minted once SignatureAuthenticator succeeded.

Code exchange railway (authorization_code grant):

    required parameters           → INVALID_REQUEST
    code lookup / expiry          → INVALID_GRANT (expired codes are deleted)
    client bound to the code      → INVALID_GRANT ("default" codes are exempt)
    client authentication         → INVALID_CLIENT / INVALID_CLIENT_CREDENTIALS
    redirect_uri match            → INVALID_GRANT ("postmessage" codes are exempt)
    PKCE verifier                 → INVALID_REQUEST (missing) / INVALID_GRANT
    user lookup                   → INVALID_GRANT
    atomic code delete            → INVALID_GRANT if another exchange won
    mint tokens

The "default" client id is the built-in first-party public client: it has
no secret and its redirect URIs come from configuration.

Access and ID tokens are HS256 JWTs. Refresh tokens are opaque random
strings, rotated on every refresh_token grant. Only SHA-256 digests of
issued tokens are stored.
"""

from __future__ import annotations

import hmac
import secrets
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from urllib.parse import urlencode
from uuid import uuid4

import structlog
from railway import ErrorCode
from railway.failure import FailureDescription
from railway.result import Result

from pki_auth.audit import AuditService
from pki_auth.domain.encoding import pkce_s256, sha256_hex
from pki_auth.domain.models import (
    DEFAULT_CLIENT_ID,
    POSTMESSAGE_REDIRECT,
    AuditAction,
    AuthorizationCode,
    Certificate,
    OAuthClient,
    OAuthToken,
    RegisteredClient,
    TokenResponse,
    User,
    utc_now,
)
from pki_auth.domain.ports import (
    AuthorizationCodeRepository,
    CertificateRepository,
    ClientRepository,
    TokenRepository,
    UserRepository,
)
from pki_auth.tokens import JwtCodec

log = structlog.get_logger()

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"
DEFAULT_SCOPE = "openid profile email"
PKCE_S256 = "S256"
PKCE_PLAIN = "plain"
SUPPORTED_SCOPES = ("openid", "profile", "email")


@dataclass(frozen=True, slots=True)
class AuthorizationRequest:
    client_id: str | None
    redirect_uri: str | None
    response_type: str | None
    scope: str | None = None
    state: str | None = None
    code_challenge: str | None = None
    code_challenge_method: str | None = None


@dataclass(frozen=True, slots=True)
class TokenRequest:
    grant_type: str | None
    code: str | None = None
    redirect_uri: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    code_verifier: str | None = None
    refresh_token: str | None = None


def _remap(code: ErrorCode, message: str, when: ErrorCode = ErrorCode.NOT_FOUND) -> Callable[[FailureDescription], FailureDescription]:
    """Failure mapper: turn `when` into (code, message), leave other failures alone."""

    def _mapper(failure: FailureDescription) -> FailureDescription:
        if failure.code is when:
            return FailureDescription(code=code, message=message)
        return failure

    return _mapper


class OAuth2AuthorizationServer:
    def __init__(
        self,
        codes: AuthorizationCodeRepository,
        clients: ClientRepository,
        tokens: TokenRepository,
        users: UserRepository,
        certificates: CertificateRepository,
        codec: JwtCodec,
        audit: AuditService,
        public_url: str,
        login_url: str = "/auth/certificate",
        default_redirect_uris: Sequence[str] = (POSTMESSAGE_REDIRECT,),
        access_token_ttl_seconds: int = 3600,
        refresh_token_ttl_seconds: int = 30 * 24 * 3600,
        code_ttl_seconds: int = 600,
        authoritative_introspection: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._codes = codes
        self._clients = clients
        self._tokens = tokens
        self._users = users
        self._certificates = certificates
        self._codec = codec
        self._audit = audit
        self._public_url = public_url.rstrip("/")
        self._login_url = login_url
        self._default_client = OAuthClient(
            client_id=DEFAULT_CLIENT_ID,
            name="First-party application",
            client_secret_hash="",
            redirect_uris=tuple(default_redirect_uris),
        )
        self._access_ttl = timedelta(seconds=access_token_ttl_seconds)
        self._refresh_ttl = timedelta(seconds=refresh_token_ttl_seconds)
        self._code_ttl = timedelta(seconds=code_ttl_seconds)
        self._authoritative = authoritative_introspection
        self._clock = clock

    # ──────────────────────── Clients ────────────────────────

    def validate_client(self, client_id: str) -> Result[OAuthClient]:
        if client_id == DEFAULT_CLIENT_ID:
            return Result.success(self._default_client)
        return self._clients.get(client_id)

    def register_client(
        self, name: str, redirect_uris: Sequence[str], ip_address: str | None = None
    ) -> Result[RegisteredClient]:
        if not name or not redirect_uris or not all(redirect_uris):
            return Result.failure(ErrorCode.INVALID_REQUEST, "Name and redirectUris are required")
        client_secret = secrets.token_hex(32)
        client = OAuthClient(
            client_id=secrets.token_hex(16),
            name=name,
            client_secret_hash=sha256_hex(client_secret),
            redirect_uris=tuple(redirect_uris),
            created_at=self._clock(),
        )
        return (
            self._clients.add(client)
            .map(lambda stored: RegisteredClient(client=stored, client_secret=client_secret))
            .peek(
                lambda registered: self._audit.record(
                    AuditAction.CLIENT_REGISTERED,
                    client_id=registered.client.client_id,
                    ip_address=ip_address,
                    name=name,
                    redirect_uris=list(redirect_uris),
                )
            )
        )

    def _client(self, client_id: str) -> Result[OAuthClient]:
        return self.validate_client(client_id).map_failure(_remap(ErrorCode.INVALID_CLIENT, "Unknown client"))

    def _authenticate_client(self, client_id: str, client_secret: str | None) -> Result[OAuthClient]:
        """Public default client passes; confidential clients need their secret."""
        return self._client(client_id).flat_map(
            lambda client: Result.success(client)
            if client.is_default
            or hmac.compare_digest(sha256_hex(client_secret or ""), client.client_secret_hash)
            else Result.failure(ErrorCode.INVALID_CLIENT_CREDENTIALS, "Invalid client credentials")
        )

    # ──────────────────────── Authorization ────────────────────────

    def authorize(self, request: AuthorizationRequest) -> Result[str]:
        """Validate an authorization request and build the redirect into the login UI."""
        if not request.client_id or not request.redirect_uri:
            return Result.failure(ErrorCode.INVALID_REQUEST, "Missing required parameters")
        if request.response_type != "code":
            return Result.failure(ErrorCode.INVALID_REQUEST, "response_type must be 'code'")
        redirect_uri = request.redirect_uri
        return (
            _pkce_method(request.code_challenge, request.code_challenge_method)
            .flat_map(lambda _: self._client(request.client_id or ""))
            .ensure(lambda c: c.allows_redirect(redirect_uri), ErrorCode.INVALID_REQUEST, "Invalid redirect_uri")
            .map(lambda _: self._login_redirect(request))
        )

    def _login_redirect(self, request: AuthorizationRequest) -> str:
        params = {
            "client_id": request.client_id,
            "redirect_uri": request.redirect_uri,
            "scope": request.scope or "",
            "state": request.state or "",
        }
        if request.code_challenge:
            params["code_challenge"] = request.code_challenge
            params["code_challenge_method"] = request.code_challenge_method or PKCE_S256
        separator = "&" if "?" in self._login_url else "?"
        return f"{self._login_url}{separator}{urlencode(params)}"

    def create_authorization_code(
        self,
        user_id: str,
        client_id: str,
        redirect_uri: str,
        scope: str | None = None,
        code_challenge: str | None = None,
        code_challenge_method: str | None = None,
        ip_address: str | None = None,
    ) -> Result[AuthorizationCode]:
        for field_name, value in (("userId", user_id), ("clientId", client_id), ("redirectUri", redirect_uri)):
            if not value:
                return Result.failure(ErrorCode.INVALID_REQUEST, f"{field_name} is required")

        now = self._clock()
        return (
            _pkce_method(code_challenge, code_challenge_method)
            .flat_map(
                lambda method: self._client(client_id)
                .ensure(lambda c: c.allows_redirect(redirect_uri), ErrorCode.INVALID_REQUEST, "Invalid redirect_uri")
                .flat_map(lambda _: self._users.get(user_id).map_failure(_remap(ErrorCode.INVALID_REQUEST, "Invalid user")))
                .flat_map(
                    lambda _: self._codes.add(
                        AuthorizationCode(
                            code=secrets.token_hex(32),
                            client_id=client_id,
                            user_id=user_id,
                            redirect_uri=redirect_uri,
                            scope=scope or DEFAULT_SCOPE,
                            expires_at=now + self._code_ttl,
                            code_challenge=code_challenge or None,
                            code_challenge_method=method or None,
                            created_at=now,
                        )
                    )
                )
            )
            .peek(
                lambda code: self._audit.record(
                    AuditAction.AUTHORIZATION_CODE_CREATED,
                    user_id=user_id,
                    client_id=client_id,
                    ip_address=ip_address,
                    redirect_uri=redirect_uri,
                )
            )
        )

    # ──────────────────────── Token endpoint ────────────────────────

    def exchange_token(self, request: TokenRequest, ip_address: str | None = None) -> Result[TokenResponse]:
        match request.grant_type:
            case "authorization_code":
                return self._exchange_code(request, ip_address)
            case "refresh_token":
                return self._refresh(request, ip_address)
            case _:
                return Result.failure(
                    ErrorCode.UNSUPPORTED_GRANT_TYPE, f"Unsupported grant_type: {request.grant_type}"
                )

    def _exchange_code(self, request: TokenRequest, ip_address: str | None) -> Result[TokenResponse]:
        if not request.code or not request.client_id:
            return Result.failure(ErrorCode.INVALID_REQUEST, "code and client_id are required")
        presented_code, client_id = request.code, request.client_id

        return (
            self._live_code(presented_code)
            .ensure(
                lambda code: code.client_id in (DEFAULT_CLIENT_ID, client_id),
                ErrorCode.INVALID_GRANT,
                "Authorization code was issued to another client",
            )
            .flat_map(lambda code: self._authenticate_client(client_id, request.client_secret).map(lambda _: code))
            .ensure(
                lambda code: code.redirect_uri in (POSTMESSAGE_REDIRECT, request.redirect_uri),
                ErrorCode.INVALID_GRANT,
                "redirect_uri does not match",
            )
            .flat_map(lambda code: _verify_pkce(code, request.code_verifier))
            .flat_map(
                lambda code: self._users.get(code.user_id)
                .map_failure(_remap(ErrorCode.INVALID_GRANT, "Unknown user"))
                .map(lambda user: (code, user))
            )
            .flat_map(
                lambda pair: self._codes.take(pair[0].code)
                .map_failure(_remap(ErrorCode.INVALID_GRANT, "Authorization code already used"))
                .map(lambda _: pair)
            )
            .flat_map(
                lambda pair: self._mint(pair[1], client_id, pair[0].scope, AuditAction.TOKEN_ISSUED, ip_address)
            )
            .peek(lambda _: log.info("oauth.token_issued", client_id=client_id))
        )

    def _live_code(self, value: str) -> Result[AuthorizationCode]:
        return (
            self._codes.get(value)
            .map_failure(_remap(ErrorCode.INVALID_GRANT, "Invalid authorization code"))
            .flat_map(self._reject_expired_code)
        )

    def _reject_expired_code(self, code: AuthorizationCode) -> Result[AuthorizationCode]:
        if not code.is_expired(self._clock()):
            return Result.success(code)
        self._codes.take(code.code)
        return Result.failure(ErrorCode.INVALID_GRANT, "Authorization code expired")

    def _refresh(self, request: TokenRequest, ip_address: str | None) -> Result[TokenResponse]:
        if not request.refresh_token or not request.client_id:
            return Result.failure(ErrorCode.INVALID_REQUEST, "refresh_token and client_id are required")
        digest = sha256_hex(request.refresh_token)
        client_id = request.client_id

        return (
            self._tokens.find(digest)
            .map_failure(_remap(ErrorCode.INVALID_GRANT, "Invalid refresh token"))
            .ensure(lambda t: t.refresh_token_hash == digest, ErrorCode.INVALID_GRANT, "Invalid refresh token")
            .ensure(lambda t: t.client_id == client_id, ErrorCode.INVALID_GRANT, "Refresh token was issued to another client")
            .flat_map(lambda t: self._authenticate_client(client_id, request.client_secret).map(lambda _: t))
            .ensure(lambda t: not t.is_refresh_expired(self._clock()), ErrorCode.INVALID_GRANT, "Refresh token expired")
            .flat_map(
                lambda t: self._users.get(t.user_id)
                .map_failure(_remap(ErrorCode.INVALID_GRANT, "Unknown user"))
                .map(lambda user: (t, user))
            )
            .flat_map(
                lambda pair: self._tokens.take_refresh(digest)
                .map_failure(_remap(ErrorCode.INVALID_GRANT, "Refresh token already used"))
                .map(lambda _: pair)
            )
            .flat_map(
                lambda pair: self._mint(pair[1], client_id, pair[0].scope, AuditAction.TOKEN_REFRESHED, ip_address)
            )
            .peek(lambda _: log.info("oauth.token_refreshed", client_id=client_id))
        )

    def _mint(
        self,
        user: User,
        client_id: str,
        scope: str,
        action: AuditAction,
        ip_address: str | None,
    ) -> Result[TokenResponse]:
        now = self._clock()
        access_expires_at = now + self._access_ttl
        token_id = uuid4().hex
        refresh_token = secrets.token_urlsafe(48)

        def _sign() -> tuple[str, str | None]:
            issued_at, expires = int(now.timestamp()), int(access_expires_at.timestamp())
            access_token = self._codec.encode(
                {
                    "sub": user.id,
                    "email": user.email,
                    "name": user.name,
                    "scope": scope,
                    "client_id": client_id,
                    "iat": issued_at,
                    "exp": expires,
                    "jti": token_id,
                }
            )
            id_token = None
            if "openid" in scope.split():
                id_token = self._codec.encode(
                    {
                        "sub": user.id,
                        "aud": client_id,
                        "email": user.email,
                        "name": user.name,
                        "iat": issued_at,
                        "exp": expires,
                    }
                )
            return access_token, id_token

        return (
            Result.from_computation(_sign, ErrorCode.SERVER_ERROR, "Failed to sign tokens")
            .flat_map(
                lambda signed: self._tokens.add(
                    OAuthToken(
                        token_id=token_id,
                        access_token_hash=sha256_hex(signed[0]),
                        refresh_token_hash=sha256_hex(refresh_token),
                        client_id=client_id,
                        user_id=user.id,
                        scope=scope,
                        access_expires_at=access_expires_at,
                        refresh_expires_at=now + self._refresh_ttl,
                        created_at=now,
                    )
                ).map(
                    lambda _: TokenResponse(
                        access_token=signed[0],
                        refresh_token=refresh_token,
                        expires_in=int(self._access_ttl.total_seconds()),
                        scope=scope,
                        id_token=signed[1],
                    )
                )
            )
            .peek(
                lambda _: self._audit.record(
                    action, user_id=user.id, client_id=client_id, ip_address=ip_address, token_id=token_id
                )
            )
        )

    # ──────────────────────── Introspection / revocation ────────────────────────

    def introspect(self, token: str | None) -> dict[str, Any]:
        """
        RFC 7662 style answer. Never fails: anything that does not check out
        is reported as {"active": false}.
        """
        if not token:
            return {"active": False}
        digest = sha256_hex(token)
        return (
            self._introspect_access(token, digest)
            .recover_with(lambda _: self._introspect_refresh(digest))
            .peek_failure(lambda failure: log.debug("oauth.introspect_inactive", reason=failure.message))
            .get_or_else({"active": False})
        )

    def _introspect_access(self, token: str, digest: str) -> Result[dict[str, Any]]:
        return (
            self._codec.decode(token)
            .flat_map(lambda claims: self._require_stored(digest).map(lambda _: claims))
            .flat_map(lambda claims: self._users.get(str(claims.get("sub", ""))).map(lambda _: claims))
            .map(
                lambda claims: {
                    "active": True,
                    "sub": claims.get("sub"),
                    "client_id": claims.get("client_id"),
                    "email": claims.get("email"),
                    "name": claims.get("name"),
                    "scope": claims.get("scope"),
                    "token_type": "Bearer",
                    "exp": claims.get("exp"),
                    "iat": claims.get("iat"),
                    "iss": claims.get("iss"),
                    "jti": claims.get("jti"),
                }
            )
        )

    def _introspect_refresh(self, digest: str) -> Result[dict[str, Any]]:
        return (
            self._tokens.find(digest)
            .ensure(lambda t: t.refresh_token_hash == digest, ErrorCode.UNAUTHORIZED, "Not a refresh token")
            .ensure(lambda t: not t.is_refresh_expired(self._clock()), ErrorCode.UNAUTHORIZED, "Token expired")
            .flat_map(lambda t: self._users.get(t.user_id).map(lambda _: t))
            .map(
                lambda t: {
                    "active": True,
                    "sub": t.user_id,
                    "client_id": t.client_id,
                    "scope": t.scope,
                    "token_type": "refresh_token",
                    "exp": int(t.refresh_expires_at.timestamp()),
                }
            )
        )

    def _require_stored(self, digest: str) -> Result[OAuthToken | bool]:
        if not self._authoritative:
            return Result.success(True)
        return self._tokens.find(digest).map_failure(_remap(ErrorCode.UNAUTHORIZED, "Token revoked"))

    def revoke(self, token: str | None, ip_address: str | None = None) -> Result[bool]:
        """
        RFC 7009 revocation by access or refresh token value.

        Succeeds whether or not the token exists; True only when a record was deleted.
        """
        if not token:
            return Result.failure(ErrorCode.INVALID_REQUEST, "token is required")
        return (
            self._tokens.find(sha256_hex(token))
            .flat_map(
                lambda record: self._tokens.delete(record.token_id).peek(
                    lambda _: self._audit.record(
                        AuditAction.TOKEN_REVOKED,
                        user_id=record.user_id,
                        client_id=record.client_id,
                        ip_address=ip_address,
                    )
                )
            )
            .recover_with(
                lambda failure: Result.success(False)
                if failure.code is ErrorCode.NOT_FOUND
                else Result.failure_from(failure)
            )
        )

    # ──────────────────────── Userinfo / metadata ────────────────────────

    def userinfo(self, access_token: str | None) -> Result[dict[str, Any]]:
        if not access_token:
            return Result.failure(ErrorCode.UNAUTHORIZED, "Missing Bearer token")
        return (
            self._codec.decode(access_token)
            .flat_map(lambda claims: self._require_stored(sha256_hex(access_token)).map(lambda _: claims))
            .flat_map(
                lambda claims: self._users.get(str(claims.get("sub", "")))
                .map_failure(_remap(ErrorCode.UNAUTHORIZED, "User not found"))
            )
            .flat_map(
                lambda user: self._certificates.list_for_user(user.id).map(
                    lambda certificates: self._profile(user, certificates[0] if certificates else None)
                )
            )
        )

    def _profile(self, user: User, latest: Certificate | None) -> dict[str, Any]:
        return {
            "sub": user.id,
            "name": user.name,
            "email": user.email,
            "certificate_serial_number": latest.serial_number if latest else None,
            "certificate_status": latest.effective_status(self._clock()).value if latest else None,
            "certificate_expires": latest.not_after.isoformat() if latest else None,
        }

    def metadata(self) -> dict[str, Any]:
        base = self._public_url
        return {
            "issuer": self._codec.issuer,
            "authorization_endpoint": f"{base}/oauth/authorize",
            "token_endpoint": f"{base}/oauth/token",
            "revocation_endpoint": f"{base}/oauth/revoke",
            "introspection_endpoint": f"{base}/oauth/introspect",
            "userinfo_endpoint": f"{base}/oauth/userinfo",
            "response_types_supported": ["code"],
            "grant_types_supported": [GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN],
            "code_challenge_methods_supported": [PKCE_S256],
            "token_endpoint_auth_methods_supported": ["client_secret_post", "none"],
            "scopes_supported": list(SUPPORTED_SCOPES),
        }

    # ──────────────────────── Housekeeping ────────────────────────

    def purge_expired(self) -> Result[int]:
        now = self._clock()
        return Result.combine(
            self._codes.purge_expired(now),
            self._tokens.purge_expired(now),
            lambda codes, tokens: codes + tokens,
        )


def _pkce_method(code_challenge: str | None, method: str | None) -> Result[str]:
    """Resolve the PKCE method for a challenge; "" when no challenge was sent."""
    if not code_challenge:
        return Result.success("")
    resolved = method or PKCE_S256
    if resolved not in (PKCE_S256, PKCE_PLAIN):
        return Result.failure(ErrorCode.INVALID_REQUEST, f"Unsupported code_challenge_method: {resolved}")
    return Result.success(resolved)


def _verify_pkce(code: AuthorizationCode, code_verifier: str | None) -> Result[AuthorizationCode]:
    if not code.code_challenge:
        return Result.success(code)
    if not code_verifier:
        return Result.failure(ErrorCode.INVALID_REQUEST, "code_verifier required")
    method = code.code_challenge_method or PKCE_S256
    computed = pkce_s256(code_verifier) if method == PKCE_S256 else code_verifier
    if not hmac.compare_digest(computed.encode("utf-8"), code.code_challenge.encode("utf-8")):
        return Result.failure(ErrorCode.INVALID_GRANT, "PKCE verification failed")
    return Result.success(code)

"""
HTTP adapter — relying-party client for the authorization server via httpx.

A library for applications that sign users in through a running pki-auth:
exchange an authorization code, refresh, introspect and read userinfo. The
server itself never calls it. HttpOAuthClient.from_settings builds one from
the same AppSettings the server reads (public_url, http_timeout_seconds).

Retry/backoff via tenacity on transient errors (network, timeout) only.
All HTTP errors are captured into Result failures — no exceptions
leak to the caller:
  - timeout after retries       → TIMEOUT_ERROR
  - OAuth error body (4xx)      → INVALID_GRANT / INVALID_CLIENT / UNAUTHORIZED / INVALID_REQUEST
  - anything else               → EXTERNAL_SERVICE_ERROR
"""

from __future__ import annotations

import secrets
from collections.abc import Callable
from typing import Any, TypeVar

import httpx
import structlog
from railway import ErrorCode
from railway.result import Result
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from pki_auth.config import AppSettings
from pki_auth.domain.encoding import pkce_s256
from pki_auth.domain.models import TokenResponse

log = structlog.get_logger()

T = TypeVar("T")

_OAUTH_ERRORS: dict[str, ErrorCode] = {
    "invalid_request": ErrorCode.INVALID_REQUEST,
    "invalid_client": ErrorCode.INVALID_CLIENT,
    "invalid_grant": ErrorCode.INVALID_GRANT,
    "unsupported_grant_type": ErrorCode.UNSUPPORTED_GRANT_TYPE,
    "invalid_token": ErrorCode.UNAUTHORIZED,
}


def new_pkce_pair() -> tuple[str, str]:
    """(code_verifier, S256 code_challenge) for a fresh authorization request."""
    verifier = secrets.token_urlsafe(48)
    return verifier, pkce_s256(verifier)


class HttpOAuthClient:
    """
    OAuth2 client bound to one client_id.

    base_url is the authorization server's public URL; endpoint paths are
    the ones it advertises in its metadata.
    """

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str | None = None,
        redirect_uri: str = "postmessage",
        timeout: int = 10,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._timeout = timeout

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        client_id: str,
        client_secret: str | None = None,
        redirect_uri: str = "postmessage",
    ) -> HttpOAuthClient:
        return cls(
            settings.public_url,
            client_id,
            client_secret=client_secret,
            redirect_uri=redirect_uri,
            timeout=settings.http_timeout_seconds,
        )

    def exchange_code(self, code: str, code_verifier: str | None = None) -> Result[TokenResponse]:
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._redirect_uri,
            **self._client_credentials(),
        }
        if code_verifier:
            form["code_verifier"] = code_verifier
        return self._call(lambda: _token_response(self._post_form("/oauth/token", form)), "Code exchange failed")

    def refresh(self, refresh_token: str) -> Result[TokenResponse]:
        form = {"grant_type": "refresh_token", "refresh_token": refresh_token, **self._client_credentials()}
        return self._call(lambda: _token_response(self._post_form("/oauth/token", form)), "Token refresh failed")

    def introspect(self, token: str) -> Result[dict[str, Any]]:
        return self._call(lambda: self._post_form("/oauth/introspect", {"token": token}), "Introspection failed")

    def userinfo(self, access_token: str) -> Result[dict[str, Any]]:
        return self._call(lambda: self._get_userinfo(access_token), "Userinfo request failed")

    def _client_credentials(self) -> dict[str, str]:
        credentials = {"client_id": self._client_id}
        if self._client_secret:
            credentials["client_secret"] = self._client_secret
        return credentials

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self._base_url, timeout=self._timeout)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=0.1, max=30),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    def _post_form(self, path: str, form: dict[str, str]) -> dict[str, Any]:
        """HTTP POST with retry — exceptions mapped by _call."""
        with self._client() as client:
            response = client.post(path, data=form)
            response.raise_for_status()
            body: dict[str, Any] = response.json()
            log.info("oauth_client.response", path=path, status=response.status_code)
            return body

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=0.1, max=30),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    def _get_userinfo(self, access_token: str) -> dict[str, Any]:
        with self._client() as client:
            response = client.get("/oauth/userinfo", headers={"Authorization": f"Bearer {access_token}"})
            response.raise_for_status()
            body: dict[str, Any] = response.json()
            return body

    def _call(self, computation: Callable[[], T], message: str) -> Result[T]:
        try:
            return Result.success(computation())
        except httpx.TimeoutException as e:
            log.warning("oauth_client.timeout", error=str(e))
            return Result.failure(ErrorCode.TIMEOUT_ERROR, f"{message}: timed out", e)
        except httpx.HTTPStatusError as e:
            return Result.failure(*_classify(e.response, message), e)
        except (httpx.HTTPError, ValueError, KeyError) as e:
            log.warning("oauth_client.error", error=str(e))
            return Result.failure(ErrorCode.EXTERNAL_SERVICE_ERROR, message, e)


def _classify(response: httpx.Response, message: str) -> tuple[ErrorCode, str]:
    """ErrorCode and description for a non-2xx answer carrying an OAuth error body."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    error = body.get("error") if isinstance(body, dict) else None
    if response.status_code < 500 and error in _OAUTH_ERRORS:
        return _OAUTH_ERRORS[error], body.get("error_description") or message
    return ErrorCode.EXTERNAL_SERVICE_ERROR, f"{message}: HTTP {response.status_code}"


def _token_response(body: dict[str, Any]) -> TokenResponse:
    return TokenResponse(
        access_token=body["access_token"],
        refresh_token=body["refresh_token"],
        expires_in=int(body["expires_in"]),
        scope=body.get("scope", ""),
        token_type=body.get("token_type", "Bearer"),
        id_token=body.get("id_token"),
    )

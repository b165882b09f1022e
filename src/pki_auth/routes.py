"""
HTTP endpoints — thin translation between JSON/form bodies and the services.

Every handler turns its request into one service call (or a short railway
of them) and renders the Result with railway.http_support, so the status
code and error body always come from the ErrorCode of the failure.

Service calls block (cryptography, psycopg). Plain `def` handlers run in
FastAPI's threadpool; the async OAuth handlers, which parse either a form
or a JSON body, hand the call to a worker thread themselves.
"""

from __future__ import annotations

import asyncio
import hmac
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from railway import ErrorCode
from railway.http_support import build_fastapi_response
from railway.result import Result

from pki_auth.domain.models import DEFAULT_CLIENT_ID, POSTMESSAGE_REDIRECT
from pki_auth.issuer import Identity
from pki_auth.main import Services
from pki_auth.oauth import AuthorizationRequest, TokenRequest
from pki_auth.schemas import (
    AuditEntryView,
    AuthorizationCodeRequest,
    CaInitResponse,
    CaView,
    CertificateStatusResponse,
    CertificateView,
    ChallengeResponse,
    ClientView,
    IssueCertificateRequest,
    IssueCertificateResponse,
    RegisterClientRequest,
    RenewCertificateRequest,
    RevocationListResponse,
    RevocationView,
    RevokeCertificateRequest,
    SignatureVerifyRequest,
    UserView,
    VerificationResponse,
    VerifyAndLoginRequest,
    VerifyCertificateRequest,
)
from pki_auth.users import user_id_for_phone

log = structlog.get_logger()

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


ServicesDep = Annotated[Services, Depends(get_services)]
AdminSecret = Annotated[str | None, Header(alias="X-Admin-Secret")]


def client_ip(request: Request) -> str | None:
    """First hop of X-Forwarded-For, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _require_admin(services: Services, presented: str | None) -> Result[bool]:
    expected = services.settings.admin_secret.get_secret_value()
    if presented and hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
        return Result.success(True)
    log.warning("routes.admin_rejected")
    return Result.failure(ErrorCode.UNAUTHORIZED, "Invalid admin secret")


def _bearer_token(authorization: str | None) -> str | None:
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip() or None
    return None


def _error_response(code: ErrorCode, message: str) -> JSONResponse:
    return build_fastapi_response(Result.failure(code, message))


# ─────────────────────── Login ───────────────────────


@router.get("/challenge")
@router.get("/auth/challenge")
def issue_challenge(services: ServicesDep) -> JSONResponse:
    return build_fastapi_response(
        services.challenges.issue(),
        serializer=lambda c: ChallengeResponse.from_domain(c).dump(),
    )


@router.post("/certificate/verify")
def verify_certificate(body: VerifyCertificateRequest, request: Request, services: ServicesDep) -> JSONResponse:
    return build_fastapi_response(
        services.verifier.verify(body.certificate_pem, client_ip(request)),
        serializer=lambda report: VerificationResponse(
            valid=report.valid, serial_number=report.serial_number, errors=list(report.errors)
        ).dump(),
    )


@router.post("/auth/signature/verify")
def verify_signature(body: SignatureVerifyRequest, request: Request, services: ServicesDep) -> JSONResponse:
    return build_fastapi_response(
        services.signatures.authenticate(
            body.challenge, body.signature, body.certificate_serial_number, client_ip(request)
        ),
        serializer=lambda login: {
            "success": True,
            "user": UserView.from_domain(login.user).dump(),
            "certificate": CertificateView.from_domain(login.certificate).dump(),
        },
    )


@router.post("/auth/verify-and-login")
def verify_and_login(body: VerifyAndLoginRequest, request: Request, services: ServicesDep) -> JSONResponse:
    """Signature login followed by an authorization code, defaulting to the first-party client."""
    ip_address = client_ip(request)
    client_id = body.client_id or DEFAULT_CLIENT_ID
    redirect_uri = body.redirect_uri or POSTMESSAGE_REDIRECT
    result = services.signatures.authenticate(
        body.challenge, body.signature, body.certificate_serial_number, ip_address
    ).flat_map(
        lambda login: services.oauth.create_authorization_code(
            user_id=login.user.id,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=body.scope,
            code_challenge=body.code_challenge,
            code_challenge_method=body.code_challenge_method,
            ip_address=ip_address,
        ).map(lambda code: (login, code))
    )
    return build_fastapi_response(
        result,
        serializer=lambda pair: {
            "success": True,
            "code": pair[1].code,
            "state": body.state,
            "redirectUri": pair[1].redirect_uri,
            "user": UserView.from_domain(pair[0].user).dump(),
        },
    )


@router.post("/auth/code")
def create_code(body: AuthorizationCodeRequest, request: Request, services: ServicesDep) -> JSONResponse:
    return build_fastapi_response(
        services.oauth.create_authorization_code(
            user_id=body.user_id,
            client_id=body.client_id,
            redirect_uri=body.redirect_uri,
            scope=body.scope,
            code_challenge=body.code_challenge,
            code_challenge_method=body.code_challenge_method,
            ip_address=client_ip(request),
        ),
        serializer=lambda code: {"code": code.code, "expiresAt": code.expires_at.isoformat()},
    )


# ─────────────────────── Certificates ───────────────────────


def _owner_id(body: IssueCertificateRequest, salt: str) -> Result[str]:
    if body.user_id:
        return Result.success(body.user_id)
    return user_id_for_phone(body.phone or "", salt)


def _validity_years(requested: int | None, services: Services) -> int:
    return requested if requested is not None else services.settings.ca.leaf_validity_years


@router.post("/certificates/issue")
def issue_certificate(body: IssueCertificateRequest, request: Request, services: ServicesDep) -> JSONResponse:
    ip_address = client_ip(request)
    result = _owner_id(body, services.settings.phone_hash_salt.get_secret_value()).flat_map(
        lambda user_id: services.issuer.issue(
            Identity(common_name=body.display_name, user_id=user_id, email=body.email),
            body.password,
            _validity_years(body.validity_years, services),
            ip_address,
        )
    )
    return build_fastapi_response(
        result, serializer=lambda issued: IssueCertificateResponse.from_domain(issued).dump()
    )


@router.post("/certificates/renew")
def renew_certificate(body: RenewCertificateRequest, request: Request, services: ServicesDep) -> JSONResponse:
    return build_fastapi_response(
        services.issuer.renew(
            body.serial_number,
            body.password,
            _validity_years(body.validity_years, services),
            client_ip(request),
        ),
        serializer=lambda issued: IssueCertificateResponse.from_domain(issued).dump(),
    )


@router.post("/certificates/revoke")
def revoke_certificate(body: RevokeCertificateRequest, request: Request, services: ServicesDep) -> JSONResponse:
    return build_fastapi_response(
        services.issuer.revoke(body.serial_number, body.reason, client_ip(request)),
        serializer=lambda entry: {"success": True, "revocation": RevocationView.from_domain(entry).dump()},
    )


@router.get("/certificates/crl", response_model=None)
def revocation_list(
    services: ServicesDep,
    output: Annotated[str, Query(alias="format", pattern="^(json|text)$")] = "json",
) -> Response:
    result = services.issuer.revocation_list().map(RevocationListResponse.from_domain)
    if output == "text" and result.is_success():
        return PlainTextResponse(result.value().to_text())
    return build_fastapi_response(result, serializer=lambda crl: crl.dump())


@router.get("/certificates/{serial_number}/status")
def certificate_status(serial_number: str, request: Request, services: ServicesDep) -> JSONResponse:
    return build_fastapi_response(
        services.issuer.status(serial_number, client_ip(request)),
        serializer=lambda report: CertificateStatusResponse.from_domain(report).dump(),
    )


@router.get("/users/{user_id}/certificates")
def user_certificates(user_id: str, services: ServicesDep) -> JSONResponse:
    return build_fastapi_response(
        services.issuer.certificates_for(user_id),
        serializer=lambda rows: {
            "certificates": [CertificateView.from_domain(cert, status).dump() for cert, status in rows]
        },
    )


# ─────────────────────── OAuth2 ───────────────────────


async def _oauth_params(request: Request) -> dict[str, str]:
    """OAuth parameters from an x-www-form-urlencoded or a JSON body."""
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            payload = await request.json()
        except ValueError:
            return {}
        if not isinstance(payload, dict):
            return {}
        return {k: str(v) for k, v in payload.items() if v is not None}
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


@router.get("/oauth/authorize", response_model=None)
def authorize(
    services: ServicesDep,
    client_id: str | None = None,
    redirect_uri: str | None = None,
    response_type: str | None = None,
    scope: str | None = None,
    state: str | None = None,
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
) -> Response:
    result = services.oauth.authorize(
        AuthorizationRequest(
            client_id=client_id,
            redirect_uri=redirect_uri,
            response_type=response_type,
            scope=scope,
            state=state,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        )
    )
    if result.is_success():
        return RedirectResponse(result.value(), status_code=302)
    return build_fastapi_response(result)


@router.post("/oauth/token")
async def token(request: Request, services: ServicesDep) -> JSONResponse:
    params = await _oauth_params(request)
    token_request = TokenRequest(
        grant_type=params.get("grant_type"),
        code=params.get("code"),
        redirect_uri=params.get("redirect_uri"),
        client_id=params.get("client_id"),
        client_secret=params.get("client_secret"),
        code_verifier=params.get("code_verifier"),
        refresh_token=params.get("refresh_token"),
    )
    result = await asyncio.to_thread(services.oauth.exchange_token, token_request, client_ip(request))
    response = build_fastapi_response(result, serializer=lambda tokens: tokens.to_dict())
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"
    return response


@router.post("/oauth/introspect")
async def introspect(request: Request, services: ServicesDep) -> JSONResponse:
    params = await _oauth_params(request)
    body = await asyncio.to_thread(services.oauth.introspect, params.get("token"))
    return JSONResponse(content=body)


@router.post("/oauth/revoke")
async def revoke_token(request: Request, services: ServicesDep) -> JSONResponse:
    params = await _oauth_params(request)
    result = await asyncio.to_thread(services.oauth.revoke, params.get("token"), client_ip(request))
    return build_fastapi_response(result, serializer=lambda _: {})


@router.api_route("/oauth/userinfo", methods=["GET", "POST"])
def userinfo(
    services: ServicesDep,
    authorization: Annotated[str | None, Header()] = None,
) -> JSONResponse:
    response = build_fastapi_response(services.oauth.userinfo(_bearer_token(authorization)))
    if response.status_code == 401:
        response.headers["WWW-Authenticate"] = 'Bearer error="invalid_token"'
    return response


@router.get("/.well-known/oauth-authorization-server")
def authorization_server_metadata(services: ServicesDep) -> dict[str, Any]:
    return services.oauth.metadata()


@router.get("/oauth/clients/{client_id}/validate")
def validate_client(client_id: str, services: ServicesDep) -> JSONResponse:
    return build_fastapi_response(
        services.oauth.validate_client(client_id),
        serializer=lambda client: {"valid": True, "name": client.name},
    )


# ─────────────────────── Administration ───────────────────────


@router.post("/admin/ca/init")
def initialize_ca(request: Request, services: ServicesDep, x_admin_secret: AdminSecret = None) -> JSONResponse:
    result = _require_admin(services, x_admin_secret).flat_map(
        lambda _: services.initialize_ca(client_ip(request))
    )
    return build_fastapi_response(
        result,
        success_status=201,
        serializer=lambda pair: CaInitResponse(
            root_ca=CaView.from_domain(pair[0]), intermediate_ca=CaView.from_domain(pair[1])
        ).dump(),
    )


@router.post("/admin/clients")
def register_client(
    body: RegisterClientRequest,
    request: Request,
    services: ServicesDep,
    x_admin_secret: AdminSecret = None,
) -> JSONResponse:
    result = _require_admin(services, x_admin_secret).flat_map(
        lambda _: services.oauth.register_client(body.name, body.redirect_uris, client_ip(request))
    )
    return build_fastapi_response(
        result,
        success_status=201,
        serializer=lambda registered: ClientView.from_registration(registered).dump(),
    )


@router.get("/admin/logs")
def audit_logs(
    services: ServicesDep,
    x_admin_secret: AdminSecret = None,
    limit: int = 100,
    offset: int = 0,
) -> JSONResponse:
    result = _require_admin(services, x_admin_secret).flat_map(
        lambda _: services.audit.recent(limit=limit, offset=offset)
    )
    return build_fastapi_response(
        result,
        serializer=lambda entries: {
            "logs": [AuditEntryView.from_domain(e).dump() for e in entries],
            "limit": limit,
            "offset": offset,
        },
    )


def validation_error_response(errors: list[dict[str, Any]]) -> JSONResponse:
    """400 invalid_request for a body or query that failed schema validation."""
    if not errors:
        return _error_response(ErrorCode.INVALID_REQUEST, "Invalid request")
    first = errors[0]
    location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "header")]
    if first.get("type") == "missing" and location:
        message = f"{location[-1]} is required"
    else:
        message = str(first.get("msg", "Invalid request")).removeprefix("Value error, ")
    return _error_response(ErrorCode.INVALID_REQUEST, message)

"""
Challenge-response login with a certificate's private key.

Railway:
  required fields
    → challenge lookup          (INVALID_CHALLENGE / CHALLENGE_EXPIRED)
    → certificate lookup        (NOT_FOUND / CERTIFICATE_NOT_ACTIVE)
    → signature decode          (INVALID_REQUEST)
    → signature check           (INVALID_SIGNATURE)
    → challenge consume         (INVALID_CHALLENGE if another login won)
    → user lookup

The signed payload is the challenge's base64-decoded bytes; signers that
sign the challenge text as UTF-8 are accepted as well. The certificate's
recorded hash algorithm is used (SHA-256 by default), with PKCS#1 v1.5 for
RSA keys and ECDSA for EC keys.

A failed signature leaves the challenge in place unless consume_on_failure
is set, so a client can retry with the same challenge until it expires.
Every failed attempt, whatever the step, is audited as SIGNATURE_REJECTED
with its error code.
"""

from __future__ import annotations

import binascii
import contextlib
from collections.abc import Callable
from datetime import datetime

import structlog
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from railway import ErrorCode, FailureDescription
from railway.result import Result

from pki_auth.audit import AuditService
from pki_auth.challenges import ChallengeService
from pki_auth.domain.encoding import decode_base64, looks_like_base64
from pki_auth.domain.models import (
    AuditAction,
    Certificate,
    CertificateStatus,
    SignatureLogin,
    utc_now,
)
from pki_auth.domain.ports import CertificateRepository, UserRepository

log = structlog.get_logger()

_HASHES: dict[str, type[hashes.HashAlgorithm]] = {
    "sha1": hashes.SHA1,
    "sha224": hashes.SHA224,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


def signed_payloads(challenge: str) -> list[bytes]:
    """Byte strings a client may have signed for this challenge, preferred first."""
    candidates: list[bytes] = []
    if looks_like_base64(challenge):
        with contextlib.suppress(binascii.Error):
            candidates.append(decode_base64(challenge))
    candidates.append(challenge.encode("utf-8"))
    return candidates


def verify_signature(public_key_pem: str, signature: bytes, payload: bytes, hash_name: str = "sha256") -> bool:
    """
    Check one signature against one payload.

    Raises ValueError for an unusable public key or hash name; returns False
    only for a well-formed but non-matching signature.
    """
    algorithm = _HASHES.get(hash_name.lower())
    if algorithm is None:
        raise ValueError(f"Unsupported signature hash algorithm: {hash_name}")
    try:
        public_key = serialization.load_pem_public_key(public_key_pem.encode("ascii"))
    except UnsupportedAlgorithm as e:
        raise ValueError("Unsupported public key type") from e
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, payload, padding.PKCS1v15(), algorithm())
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, payload, ec.ECDSA(algorithm()))
        else:
            raise ValueError(f"Unsupported public key type: {type(public_key).__name__}")
    except InvalidSignature:
        return False
    return True


class SignatureAuthenticator:
    def __init__(
        self,
        challenges: ChallengeService,
        certificates: CertificateRepository,
        users: UserRepository,
        audit: AuditService,
        consume_on_failure: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._challenges = challenges
        self._certificates = certificates
        self._users = users
        self._audit = audit
        self._consume_on_failure = consume_on_failure
        self._clock = clock

    def authenticate(
        self,
        challenge: str,
        signature: str,
        certificate_serial_number: str,
        ip_address: str | None = None,
    ) -> Result[SignatureLogin]:
        return (
            Result.success(challenge)
            .ensure(
                lambda _: bool(challenge and signature and certificate_serial_number),
                ErrorCode.INVALID_REQUEST,
                "Missing required fields",
            )
            .flat_map(self._challenges.peek)
            .flat_map(lambda _: self._active_certificate(certificate_serial_number))
            .flat_map(lambda cert: self._check_signature(cert, challenge, signature))
            .flat_map(lambda cert: self._challenges.consume(challenge).map(lambda _: cert))
            .flat_map(self._login)
            .peek(
                lambda login: self._audit.record(
                    AuditAction.SIGNATURE_VERIFIED,
                    user_id=login.user.id,
                    ip_address=ip_address,
                    certificate_serial_number=login.certificate.serial_number,
                )
            )
            .peek(lambda login: log.info("signature.verified", user_id=login.user.id))
            .peek_failure(lambda failure: self._reject(failure, challenge, certificate_serial_number, ip_address))
        )

    def _active_certificate(self, serial_number: str) -> Result[Certificate]:
        return (
            self._certificates.get(serial_number)
            .flat_map(self._require_active)
        )

    def _require_active(self, certificate: Certificate) -> Result[Certificate]:
        status = certificate.effective_status(self._clock())
        if status is not CertificateStatus.ACTIVE:
            return Result.failure(ErrorCode.CERTIFICATE_NOT_ACTIVE, f"Certificate is {status.value}")
        revocation = self._certificates.find_revocation(certificate.serial_number)
        if revocation.is_success():
            return Result.failure(
                ErrorCode.CERTIFICATE_NOT_ACTIVE, f"Certificate is {CertificateStatus.REVOKED.value}"
            )
        if revocation.error().code is not ErrorCode.NOT_FOUND:
            return Result.failure_from(revocation.error())
        return Result.success(certificate)

    def _check_signature(
        self,
        certificate: Certificate,
        challenge: str,
        signature: str,
    ) -> Result[Certificate]:
        try:
            signature_bytes = decode_base64(signature)
        except binascii.Error:
            return Result.failure(ErrorCode.INVALID_REQUEST, "Invalid signature format")

        try:
            matched = any(
                verify_signature(
                    certificate.public_key_pem,
                    signature_bytes,
                    payload,
                    certificate.signature_hash_algorithm,
                )
                for payload in signed_payloads(challenge)
            )
        except ValueError as e:
            return Result.failure(ErrorCode.INVALID_REQUEST, "Signature verification failed", e)

        if matched:
            return Result.success(certificate)
        return Result.failure(ErrorCode.INVALID_SIGNATURE, "Invalid signature")

    def _reject(
        self,
        failure: FailureDescription,
        challenge: str,
        certificate_serial_number: str,
        ip_address: str | None,
    ) -> None:
        owner = (
            self._certificates.get(certificate_serial_number).map(lambda c: c.owner_user_id).get_or_else(None)
            if certificate_serial_number
            else None
        )
        self._audit.record(
            AuditAction.SIGNATURE_REJECTED,
            user_id=owner,
            ip_address=ip_address,
            certificate_serial_number=certificate_serial_number or None,
            error=failure.code.value,
        )
        log.warning(
            "signature.rejected", certificate_serial_number=certificate_serial_number, error=failure.code.value
        )
        if failure.code is ErrorCode.INVALID_SIGNATURE and self._consume_on_failure:
            self._challenges.consume(challenge)

    def _login(self, certificate: Certificate) -> Result[SignatureLogin]:
        return self._users.get(certificate.owner_user_id).map(
            lambda user: SignatureLogin(user=user, certificate=certificate)
        )


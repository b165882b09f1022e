"""
JWT codec for access and ID tokens (HS256 via python-jose).

decode() never raises: an expired token is UNAUTHORIZED "Token expired",
any other signature, format or issuer problem is UNAUTHORIZED
"Invalid token". Audience is not checked for access tokens; ID tokens carry
the client id as `aud` for the relying party to check.
"""

from __future__ import annotations

from typing import Any

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError
from railway import ErrorCode
from railway.result import Result

DEFAULT_ALGORITHM = "HS256"


class JwtCodec:
    def __init__(self, secret: str, issuer: str, algorithm: str = DEFAULT_ALGORITHM) -> None:
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self._secret = secret
        self._issuer = issuer
        self._algorithm = algorithm

    @property
    def issuer(self) -> str:
        return self._issuer

    def encode(self, claims: dict[str, Any]) -> str:
        return jwt.encode({**claims, "iss": self._issuer}, self._secret, algorithm=self._algorithm)

    def decode(self, token: str) -> Result[dict[str, Any]]:
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                options={"verify_aud": False},
            )
        except ExpiredSignatureError as e:
            return Result.failure(ErrorCode.UNAUTHORIZED, "Token expired", e)
        except JWTError as e:
            return Result.failure(ErrorCode.UNAUTHORIZED, "Invalid token", e)
        return Result.success(claims)

"""
User directory helpers.

Users are keyed by an opaque id. When a caller only knows the user's phone
number, the id is derived as the first 32 hex characters of
SHA-256(salt + digits), so the raw number never reaches storage.
"""

from __future__ import annotations

import hashlib
import re

from railway import ErrorCode
from railway.result import Result

DEFAULT_PHONE_HASH_SALT = "2check-pki-phone-salt-v1"
USER_ID_LENGTH = 32
MIN_PHONE_DIGITS = 10

_NON_DIGITS = re.compile(r"\D")


def user_id_for_phone(phone: str, salt: str = DEFAULT_PHONE_HASH_SALT) -> Result[str]:
    """
    Derive the user id for a phone number.

    Formatting characters are ignored, so "010-1234-5678" and "01012345678"
    map to the same id.
    """
    digits = _NON_DIGITS.sub("", phone)
    if len(digits) < MIN_PHONE_DIGITS:
        return Result.failure(ErrorCode.INVALID_REQUEST, "Invalid phone number")
    return Result.success(hashlib.sha256((salt + digits).encode("utf-8")).hexdigest()[:USER_ID_LENGTH])

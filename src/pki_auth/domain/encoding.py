"""
Text encodings used on the wire and inside distinguished names.

  - ASCII-safe names: non-ASCII common names are stored in the DN as
    "B64_" + base64(UTF-8), because several X.509 consumers mangle
    non-ASCII attribute values. encode_ascii_safe / decode_ascii_safe
    are a total, invertible pair over any str, lone surrogates included.
  - Lenient base64: signatures and challenges arrive from many client
    encoders, so both the standard and URL-safe alphabets are accepted
    and missing padding is repaired.
  - PKCE: RFC 7636 S256 code challenge derivation.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import re

ASCII_SAFE_PREFIX = "B64_"

_CN_PATTERN = re.compile(r"CN=([^,]+)")
_WHITESPACE = re.compile(r"\s")
_BASE64_ALPHABET = re.compile(r"^[A-Za-z0-9+/=_-]+$")


def encode_ascii_safe(value: str) -> str:
    """
    Encode a display string so it can be embedded in a DN as plain ASCII.

    ASCII input passes through unchanged, except input that already starts
    with the marker prefix: that is encoded too, so decoding never confuses
    a literal "B64_..." name with an encoded one.

    >>> encode_ascii_safe("홍길동")
    'B64_7ZmN6ri464+Z'
    >>> encode_ascii_safe("Alice")
    'Alice'
    """
    if value.isascii() and not value.startswith(ASCII_SAFE_PREFIX):
        return value
    return ASCII_SAFE_PREFIX + base64.b64encode(value.encode("utf-8", errors="surrogatepass")).decode("ascii")


def decode_ascii_safe(value: str) -> str:
    """
    Reverse encode_ascii_safe.

    Values without the prefix, and prefixed values whose payload is not valid
    base64 of UTF-8 text, are returned unchanged.
    """
    if not value.startswith(ASCII_SAFE_PREFIX):
        return value
    try:
        payload = base64.b64decode(value[len(ASCII_SAFE_PREFIX):], validate=True)
        return payload.decode("utf-8", errors="surrogatepass")
    except (binascii.Error, UnicodeDecodeError):
        return value


def format_dn(common_name: str, organization: str, country: str) -> str:
    """Render a subject DN the way it is shown to users: "CN=..., O=..., C=..."."""
    return f"CN={encode_ascii_safe(common_name)}, O={organization}, C={country}"


def extract_common_name(subject_dn: str) -> str:
    """
    Pull the CN out of a DN string and decode it.

    >>> extract_common_name("CN=B64_7ZmN6ri464+Z, O=2Check, C=KR")
    '홍길동'

    Returns the DN itself when it has no CN attribute.
    """
    match = _CN_PATTERN.search(subject_dn)
    if match is None:
        return subject_dn
    return decode_ascii_safe(match.group(1).strip())


def normalize_base64(value: str) -> str:
    """
    Map any base64 variant onto the padded standard alphabet.

    Strips whitespace, translates the URL-safe characters and repairs padding
    (remainder 2 → "==", remainder 3 → "=").
    """
    cleaned = _WHITESPACE.sub("", value).replace("-", "+").replace("_", "/")
    remainder = len(cleaned) % 4
    if remainder == 2:
        cleaned += "=="
    elif remainder == 3:
        cleaned += "="
    return cleaned


def decode_base64(value: str) -> bytes:
    """Decode standard or URL-safe base64, with or without padding. Raises binascii.Error."""
    return base64.b64decode(normalize_base64(value), validate=True)


def looks_like_base64(value: str) -> bool:
    return bool(_BASE64_ALPHABET.match(value))


def base64url_no_padding(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def pkce_s256(code_verifier: str) -> str:
    """BASE64URL(SHA256(code_verifier)) without padding, per RFC 7636."""
    return base64url_no_padding(hashlib.sha256(code_verifier.encode("utf-8")).digest())


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()

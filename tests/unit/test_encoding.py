"""
Unit tests for the text encodings: ASCII-safe names, lenient base64, PKCE.
"""

from __future__ import annotations

import base64
import binascii

import pytest

from pki_auth.domain.encoding import (
    decode_ascii_safe,
    decode_base64,
    encode_ascii_safe,
    extract_common_name,
    format_dn,
    normalize_base64,
    pkce_s256,
    sha256_hex,
)


class TestAsciiSafeNames:
    def test_korean_name_is_prefixed_base64(self) -> None:
        """
        GIVEN the display name 홍길동
        WHEN it is encoded for a DN
        THEN the result is B64_ followed by base64 of its UTF-8 bytes.
        """
        assert encode_ascii_safe("홍길동") == "B64_7ZmN6ri464+Z"

    def test_ascii_name_passes_through(self) -> None:
        assert encode_ascii_safe("Alice Kim") == "Alice Kim"

    def test_literal_prefix_is_encoded_too(self) -> None:
        """
        GIVEN an ASCII name that happens to start with B64_
        WHEN it is encoded and decoded
        THEN the original literal comes back, not its "decoded" payload.
        """
        literal = "B64_aGVsbG8="
        encoded = encode_ascii_safe(literal)

        assert encoded != literal
        assert decode_ascii_safe(encoded) == literal

    @pytest.mark.parametrize("name", ["홍길동", "Zoë", "Alice", "山田 太郎", "", "B64_x", "\ud800x"])
    def test_decode_inverts_encode(self, name: str) -> None:
        assert decode_ascii_safe(encode_ascii_safe(name)) == name

    def test_decode_leaves_broken_payload_unchanged(self) -> None:
        """
        GIVEN a prefixed value whose payload is not valid base64
        WHEN decoded
        THEN the value is returned unchanged.
        """
        assert decode_ascii_safe("B64_***") == "B64_***"

    def test_format_and_extract_common_name(self) -> None:
        dn = format_dn("홍길동", "2Check", "KR")

        assert dn == "CN=B64_7ZmN6ri464+Z, O=2Check, C=KR"
        assert extract_common_name(dn) == "홍길동"

    def test_extract_without_cn_returns_input(self) -> None:
        assert extract_common_name("O=2Check, C=KR") == "O=2Check, C=KR"


class TestLenientBase64:
    def test_url_safe_without_padding_is_accepted(self) -> None:
        """
        GIVEN bytes encoded with the URL-safe alphabet and padding stripped
        WHEN decoded
        THEN the original bytes are recovered.
        """
        data = bytes(range(250, 256)) + b"\xfb\xff"
        encoded = base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")

        assert decode_base64(encoded) == data

    @pytest.mark.parametrize(
        ("raw", "normalized"),
        [("YQ", "YQ=="), ("YWI", "YWI="), ("YWJj", "YWJj"), ("a-_b", "a+/b"), (" YW\nJj ", "YWJj")],
    )
    def test_normalize(self, raw: str, normalized: str) -> None:
        assert normalize_base64(raw) == normalized

    def test_garbage_raises(self) -> None:
        with pytest.raises(binascii.Error):
            decode_base64("not*base64")


class TestDigests:
    def test_pkce_s256_matches_rfc7636_example(self) -> None:
        """
        GIVEN the code verifier from RFC 7636 appendix B
        WHEN the S256 challenge is derived
        THEN it equals the RFC's expected challenge.
        """
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

        assert pkce_s256(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_sha256_hex(self) -> None:
        assert sha256_hex("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"

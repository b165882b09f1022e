"""
Key pairs and X.509 certificate construction.

Pure cryptography on top of `cryptography`'s x509 builder. Nothing here
touches storage; the authority and issuer services decide what gets signed
and persist the results.

Extension profile:
  CA certificates
    - basicConstraints CA:TRUE (critical), pathlen:0 for the intermediate
    - keyUsage keyCertSign | cRLSign (critical)
  End-entity certificates
    - basicConstraints CA:FALSE (critical)
    - keyUsage digitalSignature | nonRepudiation | keyEncipherment (critical)
    - extendedKeyUsage clientAuth | emailProtection
    - subjectAltName rfc822Name when an email is given
  All certificates carry subjectKeyIdentifier and authorityKeyIdentifier.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from pki_auth.domain.encoding import encode_ascii_safe
from pki_auth.domain.models import SubjectInfo, utc_now

MIN_KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537

_DN_ORDER = (
    (NameOID.COMMON_NAME, "CN"),
    (NameOID.ORGANIZATION_NAME, "O"),
    (NameOID.COUNTRY_NAME, "C"),
)


@dataclass(frozen=True, slots=True)
class SignerContext:
    """
    The key material a certificate is signed with.

    certificate is None for a self-signed (root) certificate; otherwise it is
    the issuing CA certificate, whose subject becomes the new issuer name.
    """

    private_key: rsa.RSAPrivateKey = field(repr=False)
    certificate: x509.Certificate | None = None

    @property
    def is_self_signed(self) -> bool:
        return self.certificate is None


def add_years(moment: datetime, years: int) -> datetime:
    """Calendar-year arithmetic; 29 February falls back to the 28th."""
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        return moment.replace(year=moment.year + years, day=28)


def build_name(subject: SubjectInfo) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, encode_ascii_safe(subject.common_name)),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, subject.organization),
            x509.NameAttribute(NameOID.COUNTRY_NAME, subject.country),
        ]
    )


def dn_string(name: x509.Name) -> str:
    """Render a Name as "CN=..., O=..., C=..." (the stored and displayed form)."""
    parts = [
        f"{label}={attribute.value!s}"
        for oid, label in _DN_ORDER
        for attribute in name.get_attributes_for_oid(oid)
    ]
    return ", ".join(parts)


def serial_hex(certificate: x509.Certificate) -> str:
    return format(certificate.serial_number, "X")


def certificate_to_pem(certificate: x509.Certificate) -> str:
    return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


def load_certificate(pem: str) -> x509.Certificate:
    """Parse a PEM certificate. Raises ValueError on malformed input."""
    return x509.load_pem_x509_certificate(pem.encode("ascii"))


def public_key_to_pem(public_key: rsa.RSAPublicKey) -> str:
    return public_key.public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def private_key_to_pem(private_key: rsa.RSAPrivateKey, passphrase: str | None = None) -> str:
    """PKCS#8 PEM, encrypted with the best available cipher when a passphrase is given."""
    encryption: serialization.KeySerializationEncryption = (
        serialization.BestAvailableEncryption(passphrase.encode("utf-8"))
        if passphrase
        else serialization.NoEncryption()
    )
    return private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        encryption,
    ).decode("ascii")


def load_private_key(pem: str, passphrase: str | None = None) -> rsa.RSAPrivateKey:
    key = serialization.load_pem_private_key(
        pem.encode("ascii"),
        password=passphrase.encode("utf-8") if passphrase else None,
    )
    if not isinstance(key, rsa.RSAPrivateKey):
        raise TypeError(f"Expected an RSA private key, got {type(key).__name__}")
    return key


class KeyPairFactory:
    """
    Generates RSA key pairs and builds signed certificates.

    Key sizes below 2048 bits are rejected at construction. The clock is
    injectable so validity windows are deterministic in tests.
    """

    def __init__(
        self,
        leaf_key_size: int = 2048,
        ca_key_size: int = 4096,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        for size in (leaf_key_size, ca_key_size):
            if size < MIN_KEY_SIZE:
                raise ValueError(f"RSA key size must be at least {MIN_KEY_SIZE} bits, got {size}")
        self._leaf_key_size = leaf_key_size
        self._ca_key_size = ca_key_size
        self._clock = clock

    def generate_key_pair(self, is_ca: bool = False) -> tuple[rsa.RSAPublicKey, rsa.RSAPrivateKey]:
        private_key = rsa.generate_private_key(
            public_exponent=PUBLIC_EXPONENT,
            key_size=self._ca_key_size if is_ca else self._leaf_key_size,
        )
        return private_key.public_key(), private_key

    def build_certificate(
        self,
        subject: SubjectInfo,
        signer: SignerContext,
        public_key: rsa.RSAPublicKey,
        validity_years: int,
        is_ca: bool = False,
        path_length: int | None = None,
    ) -> x509.Certificate:
        """
        Build and sign a certificate for `public_key`.

        The validity window starts now (second precision) and spans exactly
        `validity_years` calendar years.
        """
        subject_name = build_name(subject)
        not_before = self._clock().replace(microsecond=0)
        not_after = add_years(not_before, validity_years)

        builder = (
            x509.CertificateBuilder()
            .subject_name(subject_name)
            .issuer_name(subject_name if signer.certificate is None else signer.certificate.subject)
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
            .add_extension(_authority_key_identifier(signer, public_key), critical=False)
        )
        builder = _with_ca_profile(builder, path_length) if is_ca else _with_leaf_profile(builder, subject)
        return builder.sign(signer.private_key, hashes.SHA256())


def _authority_key_identifier(
    signer: SignerContext, public_key: rsa.RSAPublicKey
) -> x509.AuthorityKeyIdentifier:
    if signer.certificate is None:
        return x509.AuthorityKeyIdentifier.from_issuer_public_key(public_key)
    issuer_ski = signer.certificate.extensions.get_extension_for_class(x509.SubjectKeyIdentifier)
    return x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(issuer_ski.value)


def _with_ca_profile(builder: x509.CertificateBuilder, path_length: int | None) -> x509.CertificateBuilder:
    return builder.add_extension(
        x509.BasicConstraints(ca=True, path_length=path_length), critical=True
    ).add_extension(
        x509.KeyUsage(
            digital_signature=False,
            content_commitment=False,
            key_encipherment=False,
            data_encipherment=False,
            key_agreement=False,
            key_cert_sign=True,
            crl_sign=True,
            encipher_only=False,
            decipher_only=False,
        ),
        critical=True,
    )


def _with_leaf_profile(builder: x509.CertificateBuilder, subject: SubjectInfo) -> x509.CertificateBuilder:
    builder = (
        builder.add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=True,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage(
                [ExtendedKeyUsageOID.CLIENT_AUTH, ExtendedKeyUsageOID.EMAIL_PROTECTION]
            ),
            critical=False,
        )
    )
    if subject.email:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.RFC822Name(subject.email)]), critical=False
        )
    return builder

"""
Unit tests for certificate verification against the local CA hierarchy.
"""

from __future__ import annotations

from railway import ErrorCode
from railway.assertions import ResultAssertions

from pki_auth.adapters.memory import create_memory_repositories
from pki_auth.audit import AuditService
from pki_auth.authority import CertificateAuthorityService
from pki_auth.domain.models import AuditAction, IssuedCertificate, SubjectInfo
from pki_auth.domain.ports import Repositories
from pki_auth.issuer import CertificateIssuer
from pki_auth.keys import KeyPairFactory, SignerContext, certificate_to_pem
from pki_auth.verifier import CertificateVerifier
from tests.conftest import PASSWORD, MutableClock


class TestValidCertificate:
    def test_freshly_issued_certificate_is_valid(
        self, verifier: CertificateVerifier, issued: IssuedCertificate
    ) -> None:
        report = ResultAssertions.assert_success(verifier.verify(issued.certificate_pem))

        assert report.valid
        assert report.serial_number == issued.serial_number
        assert report.errors == ()

    def test_verification_is_audited(
        self, verifier: CertificateVerifier, issued: IssuedCertificate, repositories: Repositories
    ) -> None:
        verifier.verify(issued.certificate_pem, ip_address="10.0.0.1")

        latest = repositories.audit.recent(1).value()[0]
        assert latest.action is AuditAction.CERTIFICATE_VERIFIED
        assert latest.ip_address == "10.0.0.1"
        assert latest.details["valid"] is True


class TestInvalidCertificate:
    def test_revoked_certificate_reports_reason(
        self, verifier: CertificateVerifier, issuer: CertificateIssuer, issued: IssuedCertificate
    ) -> None:
        """
        GIVEN a revoked certificate
        WHEN it is verified
        THEN the report is invalid and names the revocation reason once.
        """
        issuer.revoke(issued.serial_number, "keyCompromise")

        report = ResultAssertions.assert_success(verifier.verify(issued.certificate_pem))

        assert not report.valid
        assert report.errors == ("Certificate revoked: keyCompromise",)

    def test_renewed_certificate_is_not_valid(
        self, verifier: CertificateVerifier, issuer: CertificateIssuer, issued: IssuedCertificate
    ) -> None:
        issuer.renew(issued.serial_number, PASSWORD)

        report = verifier.verify(issued.certificate_pem).value()

        assert report.errors == ("Certificate status: RENEWED",)

    def test_expired_certificate(
        self, verifier: CertificateVerifier, issued: IssuedCertificate, clock: MutableClock
    ) -> None:
        clock.advance(days=400)

        assert verifier.verify(issued.certificate_pem).value().errors == ("Certificate expired",)

    def test_not_yet_valid(
        self, verifier: CertificateVerifier, issued: IssuedCertificate, clock: MutableClock
    ) -> None:
        clock.advance(days=-1)

        assert "Certificate not yet valid" in verifier.verify(issued.certificate_pem).value().errors

    def test_foreign_certificate_fails_chain(
        self, verifier: CertificateVerifier, key_factory: KeyPairFactory
    ) -> None:
        """
        GIVEN a certificate signed by an unrelated self-signed CA
        WHEN it is verified
        THEN chain verification fails and collection still reports it as invalid.
        """
        ca_public, ca_private = key_factory.generate_key_pair(is_ca=True)
        foreign_ca = key_factory.build_certificate(
            SubjectInfo("Rogue CA", "Elsewhere", "US"), SignerContext(private_key=ca_private), ca_public, 5, is_ca=True
        )
        public, _ = key_factory.generate_key_pair()
        leaf = key_factory.build_certificate(
            SubjectInfo("Mallory", "Elsewhere", "US"),
            SignerContext(private_key=ca_private, certificate=foreign_ca),
            public,
            1,
        )

        report = ResultAssertions.assert_success(verifier.verify(certificate_to_pem(leaf)))

        assert report.errors == ("Certificate chain verification failed",)

    def test_unparseable_pem(self, verifier: CertificateVerifier, repositories: Repositories) -> None:
        """
        GIVEN text that is not a PEM certificate
        WHEN it is verified
        THEN the call fails with INVALID_REQUEST AND the attempt is still audited as invalid.
        """
        result = verifier.verify("not a certificate", ip_address="10.0.0.1")

        ResultAssertions.assert_failure(result, ErrorCode.INVALID_REQUEST)
        latest = repositories.audit.recent(1).value()[0]
        assert latest.action is AuditAction.CERTIFICATE_VERIFIED
        assert latest.ip_address == "10.0.0.1"
        assert latest.details == {"serial_number": None, "valid": False, "error": "INVALID_REQUEST"}

    def test_without_ca(
        self, key_factory: KeyPairFactory, audit: AuditService, issued: IssuedCertificate, repositories: Repositories
    ) -> None:
        """
        GIVEN a store whose CA was never initialized
        WHEN any certificate is verified
        THEN the call fails with NOT_INITIALIZED rather than reporting it invalid.
        """
        empty = create_memory_repositories()
        verifier = CertificateVerifier(
            CertificateAuthorityService(empty.ca, key_factory, audit), empty.certificates, audit
        )

        ResultAssertions.assert_failure(verifier.verify(issued.certificate_pem), ErrorCode.NOT_INITIALIZED)
        latest = repositories.audit.recent(1).value()[0]
        assert latest.details == {"serial_number": issued.serial_number, "valid": False, "error": "NOT_INITIALIZED"}

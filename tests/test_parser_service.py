"""Tests for Parser service."""

from datetime import datetime, timedelta, timezone

import pytest

from localpki.exceptions import InvalidInputError
from localpki.services.parser_service import CertificateParser


@pytest.mark.unit
class TestCertificateParser:
    """Test certificate parser functionality."""

    def test_load_pem_and_der(self, root_pair):
        """Test loading a certificate from either encoding."""
        root_cert, _ = root_pair

        assert CertificateParser.load_certificate(CertificateParser.to_pem(root_cert)) == root_cert
        assert CertificateParser.load_certificate(CertificateParser.to_der(root_cert)) == root_cert

    def test_load_garbage_fails(self):
        """Test loading bytes that are no certificate."""
        with pytest.raises(InvalidInputError):
            CertificateParser.load_certificate(b"definitely not a certificate")

    def test_load_nonexistent_file_fails(self, tmp_path):
        """Test loading a nonexistent certificate file fails."""
        with pytest.raises(FileNotFoundError):
            CertificateParser.load_certificate_file(tmp_path / "missing.crt")

    def test_split_pem_bundle(self, root_pair, leaf_pair):
        """Test splitting a concatenated PEM bundle."""
        bundle = CertificateParser.to_pem(leaf_pair[0]) + b"\n" + CertificateParser.to_pem(root_pair[0])

        blocks = CertificateParser.split_pem_bundle(bundle)

        assert len(blocks) == 2
        assert CertificateParser.load_certificate(blocks[1]) == root_pair[0]

    def test_fingerprint_format(self, root_pair):
        """Test the fingerprint is upper-case SHA-256 hex."""
        fingerprint = CertificateParser.compute_fingerprint(root_pair[0])

        assert len(fingerprint) == 64
        assert fingerprint == fingerprint.upper()
        int(fingerprint, 16)

    def test_self_signed_and_ca(self, root_pair, leaf_pair):
        """Test root and leaf classification."""
        assert CertificateParser.is_self_signed(root_pair[0])
        assert CertificateParser.is_ca(root_pair[0])
        assert not CertificateParser.is_self_signed(leaf_pair[0])
        assert not CertificateParser.is_ca(leaf_pair[0])

    def test_verify_signature(self, root_pair, leaf_pair, impostor_root_pair):
        """Test signature verification against the right and the wrong issuer."""
        assert CertificateParser.verify_signature(leaf_pair[0], root_pair[0])
        assert not CertificateParser.verify_signature(leaf_pair[0], impostor_root_pair[0])

    def test_verify_key_pair(self, leaf_pair, root_pair):
        """Test matching certificate and key."""
        assert CertificateParser.verify_key_pair(leaf_pair[0], leaf_pair[1])
        assert not CertificateParser.verify_key_pair(leaf_pair[0], root_pair[1])

    def test_describe(self, leaf_pair):
        """Test the certificate summary."""
        info = CertificateParser.describe(leaf_pair[0])

        assert info.subject == "CN=localhost,O=Test Organization"
        assert info.issuer == "CN=Test Root CA,O=Test Organization,C=US"
        assert info.sans == ["localhost", "127.0.0.1"]
        assert "serverAuth" in info.extended_key_usage
        assert info.validity_status == "success"

    def test_get_validity_status_valid(self):
        """Test validity status for valid certificate."""
        now = datetime.now(timezone.utc)
        not_before = now - timedelta(days=1)
        not_after = now + timedelta(days=100)

        status_class, status_text = CertificateParser.get_validity_status(not_before, not_after)

        assert status_class == "success"
        assert "Valid" in status_text

    def test_get_validity_status_expiring_soon(self):
        """Test validity status for expiring certificate."""
        now = datetime.now(timezone.utc)
        not_before = now - timedelta(days=1)
        not_after = now + timedelta(days=15)  # Expires in 15 days

        status_class, status_text = CertificateParser.get_validity_status(not_before, not_after)

        assert status_class == "warning"
        assert "days" in status_text

    def test_get_validity_status_expired(self):
        """Test validity status for expired certificate."""
        now = datetime.now(timezone.utc)
        not_before = now - timedelta(days=100)
        not_after = now - timedelta(days=1)  # Expired

        status_class, status_text = CertificateParser.get_validity_status(not_before, not_after)

        assert status_class == "danger"
        assert "Expired" in status_text

    def test_get_validity_status_not_yet_valid(self):
        """Test validity status for not yet valid certificate."""
        now = datetime.now(timezone.utc)
        not_before = now + timedelta(days=1)  # Future
        not_after = now + timedelta(days=100)

        status_class, status_text = CertificateParser.get_validity_status(not_before, not_after)

        assert status_class == "warning"
        assert "Not yet valid" in status_text

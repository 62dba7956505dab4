"""Certificate parsing service."""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from localpki.exceptions import InvalidInputError
from localpki.models.certificate import CertificateInfo

logger = logging.getLogger("localpki")

PEM_CERT_PATTERN = re.compile(rb"-----BEGIN CERTIFICATE-----(?:.|\n|\r)+?-----END CERTIFICATE-----")


class CertificateParser:
    """Service for parsing and inspecting X.509 certificates."""

    @staticmethod
    def split_pem_bundle(pem_bundle: bytes) -> List[bytes]:
        """
        Split a byte string containing multiple PEM certificates into a list.

        Args:
            pem_bundle: One or more PEM-encoded certificates

        Returns:
            A list of individual PEM certificate blocks
        """
        return PEM_CERT_PATTERN.findall(pem_bundle)

    @staticmethod
    def load_certificate(data: bytes) -> x509.Certificate:
        """
        Load a single certificate from PEM or DER bytes.

        Args:
            data: Certificate bytes in either encoding

        Returns:
            Parsed certificate

        Raises:
            InvalidInputError: If the bytes are not a certificate
        """
        try:
            if b"-----BEGIN CERTIFICATE-----" in data:
                return x509.load_pem_x509_certificate(data)
            return x509.load_der_x509_certificate(data)
        except ValueError as e:
            raise InvalidInputError(f"Failed to parse certificate: {e}") from e

    @staticmethod
    def load_certificate_file(cert_path: Path) -> x509.Certificate:
        """
        Load a certificate from a file.

        Raises:
            FileNotFoundError: If certificate file not found
            InvalidInputError: If certificate cannot be parsed
        """
        if not cert_path.exists():
            raise FileNotFoundError(f"Certificate not found: {cert_path}")

        with open(cert_path, "rb") as f:
            return CertificateParser.load_certificate(f.read())

    @staticmethod
    def to_pem(cert: x509.Certificate) -> bytes:
        return cert.public_bytes(serialization.Encoding.PEM)

    @staticmethod
    def to_der(cert: x509.Certificate) -> bytes:
        return cert.public_bytes(serialization.Encoding.DER)

    @staticmethod
    def compute_fingerprint(cert: x509.Certificate) -> str:
        """
        Compute the stable thumbprint of a certificate.

        SHA-256 over the DER encoding, upper-case hex without separators.
        """
        return cert.fingerprint(hashes.SHA256()).hex().upper()

    @staticmethod
    def subject_string(name: x509.Name) -> str:
        """Render a distinguished name in RFC 4514 form."""
        return name.rfc4514_string()

    @staticmethod
    def is_self_signed(cert: x509.Certificate) -> bool:
        return cert.subject == cert.issuer

    @staticmethod
    def is_ca(cert: x509.Certificate) -> bool:
        """
        Check if certificate is a CA.

        Args:
            cert: Certificate object

        Returns:
            True if CA, False otherwise
        """
        try:
            bc = cert.extensions.get_extension_for_oid(x509.ExtensionOID.BASIC_CONSTRAINTS)
            return bc.value.ca
        except x509.ExtensionNotFound:
            return False

    @staticmethod
    def verify_signature(cert: x509.Certificate, issuer_cert: x509.Certificate) -> bool:
        """
        Check that ``cert`` was signed by the key of ``issuer_cert``.

        Args:
            cert: Certificate whose signature is checked
            issuer_cert: Candidate issuer

        Returns:
            True if the signature verifies, False otherwise
        """
        issuer_public_key = issuer_cert.public_key()

        try:
            if isinstance(issuer_public_key, rsa.RSAPublicKey):
                issuer_public_key.verify(
                    cert.signature,
                    cert.tbs_certificate_bytes,
                    padding.PKCS1v15(),
                    cert.signature_hash_algorithm,
                )
            elif isinstance(issuer_public_key, ec.EllipticCurvePublicKey):
                issuer_public_key.verify(
                    cert.signature,
                    cert.tbs_certificate_bytes,
                    ec.ECDSA(cert.signature_hash_algorithm),
                )
            elif isinstance(issuer_public_key, ed25519.Ed25519PublicKey):
                issuer_public_key.verify(cert.signature, cert.tbs_certificate_bytes)
            else:
                logger.warning(f"Unsupported key type for signature verification: {type(issuer_public_key).__name__}")
                return False
        except (InvalidSignature, ValueError, TypeError) as e:
            logger.debug(f"Signature of {CertificateParser.get_cn(cert)} does not verify: {e!r}")
            return False

        return True

    @staticmethod
    def verify_key_pair(cert: x509.Certificate, private_key) -> bool:
        """
        Verify that certificate and private key match.

        Args:
            cert: Certificate
            private_key: Private key object

        Returns:
            True if key pair matches, False otherwise
        """
        pub_from_private_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.DER, format=serialization.PublicFormat.SubjectPublicKeyInfo
        )
        pub_from_cert_bytes = cert.public_key().public_bytes(
            encoding=serialization.Encoding.DER, format=serialization.PublicFormat.SubjectPublicKeyInfo
        )
        return pub_from_private_bytes == pub_from_cert_bytes

    @staticmethod
    def get_cn(cert: x509.Certificate) -> str:
        """Get Common Name from certificate subject."""
        cn_attrs = cert.subject.get_attributes_for_oid(x509.NameOID.COMMON_NAME)
        return str(cn_attrs[0].value) if cn_attrs else "Unknown"

    @staticmethod
    def get_validity_status(
        not_before: datetime, not_after: datetime, warning_days: int = 30, now: Optional[datetime] = None
    ) -> tuple[str, str]:
        """
        Get validity status of certificate.

        Args:
            not_before: Certificate start date
            not_after: Certificate end date
            warning_days: Expiry horizon that turns the status into a warning
            now: Reference time (defaults to the current UTC time)

        Returns:
            Tuple of (status_class, status_text)
            status_class: success, warning or danger
            status_text: Human-readable status
        """
        now = now or datetime.now(timezone.utc)

        if now < not_before:
            return "warning", "Not yet valid"
        elif now > not_after:
            return "danger", "Expired"
        else:
            days_remaining = (not_after - now).days
            if days_remaining <= warning_days:
                return "warning", f"Expires in {days_remaining} days"
            else:
                return "success", "Valid"

    @staticmethod
    def describe(cert: x509.Certificate, warning_days: int = 30) -> CertificateInfo:
        """
        Build a summary of a certificate.

        Args:
            cert: Certificate object
            warning_days: Expiry horizon for the validity status

        Returns:
            CertificateInfo with the extracted fields
        """
        status_class, status_text = CertificateParser.get_validity_status(
            cert.not_valid_before_utc, cert.not_valid_after_utc, warning_days
        )
        return CertificateInfo(
            fingerprint=CertificateParser.compute_fingerprint(cert),
            subject=CertificateParser.subject_string(cert.subject),
            issuer=CertificateParser.subject_string(cert.issuer),
            serial_number=format(cert.serial_number, "X"),
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            is_ca=CertificateParser.is_ca(cert),
            self_signed=CertificateParser.is_self_signed(cert),
            sans=CertificateParser._extract_sans(cert),
            key_usage=CertificateParser._extract_key_usage(cert),
            extended_key_usage=CertificateParser._extract_extended_key_usage(cert),
            validity_status=status_class,
            validity_text=status_text,
        )

    @staticmethod
    def _extract_sans(cert: x509.Certificate) -> list[str]:
        """Extract Subject Alternative Names (DNS names and IPs) as strings."""
        try:
            san_ext = cert.extensions.get_extension_for_oid(x509.ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
            return [str(name.value) for name in san_ext.value]
        except x509.ExtensionNotFound:
            return []

    @staticmethod
    def _extract_key_usage(cert: x509.Certificate) -> list[str]:
        """
        Extract Key Usage extension values.

        Args:
            cert: Certificate object

        Returns:
            List of Key Usage strings (e.g., ["digitalSignature", "keyEncipherment"])
        """
        try:
            ku = cert.extensions.get_extension_for_oid(x509.ExtensionOID.KEY_USAGE).value
        except x509.ExtensionNotFound:
            return []

        usage_map = [
            ("digitalSignature", ku.digital_signature),
            ("nonRepudiation", ku.content_commitment),
            ("keyEncipherment", ku.key_encipherment),
            ("dataEncipherment", ku.data_encipherment),
            ("keyAgreement", ku.key_agreement),
            ("keyCertSign", ku.key_cert_sign),
            ("cRLSign", ku.crl_sign),
        ]
        return [name for name, enabled in usage_map if enabled]

    @staticmethod
    def _extract_extended_key_usage(cert: x509.Certificate) -> list[str]:
        """
        Extract Extended Key Usage extension values.

        Args:
            cert: Certificate object

        Returns:
            List of Extended Key Usage strings (e.g., ["serverAuth"])
        """
        eku_oid_map = {
            x509.ExtendedKeyUsageOID.SERVER_AUTH: "serverAuth",
            x509.ExtendedKeyUsageOID.CLIENT_AUTH: "clientAuth",
            x509.ExtendedKeyUsageOID.CODE_SIGNING: "codeSigning",
            x509.ExtendedKeyUsageOID.EMAIL_PROTECTION: "emailProtection",
            x509.ExtendedKeyUsageOID.TIME_STAMPING: "timeStamping",
            x509.ExtendedKeyUsageOID.OCSP_SIGNING: "OCSPSigning",
        }

        try:
            eku_ext = cert.extensions.get_extension_for_oid(x509.ExtensionOID.EXTENDED_KEY_USAGE)
        except x509.ExtensionNotFound:
            return []

        return [eku_oid_map.get(oid, oid.dotted_string) for oid in eku_ext.value]

"""Key pair generation, certificate signing and PKCS#12 bundling."""

import ipaddress
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from localpki.exceptions import GenerationError, InvalidInputError, SigningError
from localpki.models.certificate import EncryptedPrivateKeyBundle, Subject
from localpki.services.parser_service import CertificateParser
from localpki.utils.secret_utils import generate_password, secret_bytes
from localpki.utils.time_utils import as_utc
from localpki.utils.validators import parse_san, validate_common_name

logger = logging.getLogger("localpki")

# Tolerate small clock differences between the issuing host and the consumer
CLOCK_SKEW = timedelta(minutes=5)


class KeyMaterialGenerator:
    """Produces RSA key pairs and signs root and leaf certificates."""

    ROOT_MIN_KEY_SIZE = 4096
    LEAF_MIN_KEY_SIZE = 2048
    DEFAULT_ROOT_VALIDITY_DAYS = 730
    DEFAULT_LEAF_VALIDITY_DAYS = 365
    MIN_PASSWORD_LENGTH = 16

    def __init__(self, min_password_length: int = MIN_PASSWORD_LENGTH):
        """
        Initialize the generator.

        Args:
            min_password_length: Bundle password policy (at least 16)
        """
        self.min_password_length = max(min_password_length, self.MIN_PASSWORD_LENGTH)

    def generate_root_certificate(
        self,
        subject: Subject,
        validity_days: int = DEFAULT_ROOT_VALIDITY_DAYS,
        key_size: int = ROOT_MIN_KEY_SIZE,
        now: Optional[datetime] = None,
    ) -> Tuple[x509.Certificate, rsa.RSAPrivateKey]:
        """
        Generate a self-signed root CA certificate.

        Args:
            subject: Root subject (common name required)
            validity_days: Lifetime in days, must be positive
            key_size: RSA modulus size, at least 4096
            now: Issuance time (defaults to the current UTC time)

        Returns:
            Tuple of (root certificate, root private key)

        Raises:
            InvalidInputError: If subject, validity or key size violate policy
            GenerationError: If key generation or signing fails
        """
        validate_common_name(subject.common_name)
        self._check_validity(validity_days)
        self._check_key_size(key_size, self.ROOT_MIN_KEY_SIZE, "root")

        now = as_utc(now)
        name = self.build_name(subject)

        try:
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

            certificate = (
                x509.CertificateBuilder()
                .subject_name(name)
                .issuer_name(name)
                .public_key(private_key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(now - CLOCK_SKEW)
                .not_valid_after(now + timedelta(days=validity_days))
                .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        key_cert_sign=True,
                        crl_sign=True,
                        key_encipherment=False,
                        content_commitment=False,
                        data_encipherment=False,
                        key_agreement=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()), critical=False)
                .sign(private_key, hashes.SHA256())
            )
        except Exception as e:
            logger.error(f"Root CA generation failed for '{subject.common_name}': {e}")
            raise GenerationError(f"Failed to generate root certificate: {e}", stage="generate-root") from e

        logger.info(
            f"Generated root CA '{subject.common_name}' "
            f"(fingerprint {CertificateParser.compute_fingerprint(certificate)}, RSA {key_size})"
        )
        return certificate, private_key

    def generate_leaf_certificate(
        self,
        subject: Subject,
        sans: Sequence[str],
        root_cert: x509.Certificate,
        root_key: rsa.RSAPrivateKey,
        validity_days: int = DEFAULT_LEAF_VALIDITY_DAYS,
        key_size: int = LEAF_MIN_KEY_SIZE,
        now: Optional[datetime] = None,
    ) -> Tuple[x509.Certificate, rsa.RSAPrivateKey]:
        """
        Generate a TLS server certificate signed by the root CA.

        Args:
            subject: Leaf subject
            sans: DNS names and/or IP addresses, at least one
            root_cert: Issuing root certificate
            root_key: Root private key
            validity_days: Lifetime in days, clamped to the root's expiry
            key_size: RSA modulus size, at least 2048
            now: Issuance time (defaults to the current UTC time)

        Returns:
            Tuple of (leaf certificate, leaf private key)

        Raises:
            InvalidInputError: If subject, SANs, validity or key size are invalid
            SigningError: If the root key material cannot sign
            GenerationError: If key generation or signing fails
        """
        validate_common_name(subject.common_name)
        self._check_validity(validity_days)
        self._check_key_size(key_size, self.LEAF_MIN_KEY_SIZE, "leaf")
        general_names = self._build_san_list(sans)

        now = as_utc(now)
        self._check_root(root_cert, root_key, now)

        not_after = min(now + timedelta(days=validity_days), root_cert.not_valid_after_utc)

        try:
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

            certificate = (
                x509.CertificateBuilder()
                .subject_name(self.build_name(subject))
                .issuer_name(root_cert.subject)
                .public_key(private_key.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(now - CLOCK_SKEW)
                .not_valid_after(not_after)
                .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
                .add_extension(
                    x509.KeyUsage(
                        digital_signature=True,
                        key_encipherment=True,
                        key_cert_sign=False,
                        crl_sign=False,
                        content_commitment=False,
                        data_encipherment=False,
                        key_agreement=False,
                        encipher_only=False,
                        decipher_only=False,
                    ),
                    critical=True,
                )
                .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
                .add_extension(x509.SubjectAlternativeName(general_names), critical=False)
                .add_extension(x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()), critical=False)
                .add_extension(
                    x509.AuthorityKeyIdentifier.from_issuer_public_key(root_key.public_key()),
                    critical=False,
                )
                .sign(root_key, hashes.SHA256())
            )
        except Exception as e:
            logger.error(f"Leaf certificate generation failed for '{subject.common_name}': {e}")
            raise GenerationError(f"Failed to generate leaf certificate: {e}", stage="generate-leaf") from e

        logger.info(
            f"Generated leaf certificate '{subject.common_name}' "
            f"(fingerprint {CertificateParser.compute_fingerprint(certificate)}, SANs: {', '.join(sans)})"
        )
        return certificate, private_key

    def bundle_private_key(
        self,
        leaf_cert: x509.Certificate,
        leaf_key: rsa.RSAPrivateKey,
        root_cert: x509.Certificate,
        password: str,
    ) -> EncryptedPrivateKeyBundle:
        """
        Bind the leaf certificate, its key and the root into a PKCS#12 container.

        Callers must write the result with owner-only permissions and must not
        keep the plaintext password next to it without limiting access.

        Args:
            leaf_cert: Leaf certificate
            leaf_key: Leaf private key
            root_cert: Root certificate, included for chain completeness
            password: Bundle password (policy: at least 16 characters)

        Returns:
            Encrypted bundle

        Raises:
            InvalidInputError: If the password violates the policy or the key does not match
            GenerationError: If serialization fails
        """
        self.check_password(password)
        if not CertificateParser.verify_key_pair(leaf_cert, leaf_key):
            raise InvalidInputError("Private key does not match the leaf certificate", stage="bundle")

        fingerprint = CertificateParser.compute_fingerprint(leaf_cert)
        friendly_name = CertificateParser.get_cn(leaf_cert)

        with secret_bytes(password) as secret:
            try:
                data = pkcs12.serialize_key_and_certificates(
                    name=friendly_name.encode("utf-8"),
                    key=leaf_key,
                    cert=leaf_cert,
                    cas=[root_cert],
                    encryption_algorithm=serialization.BestAvailableEncryption(bytes(secret)),
                )
            except Exception as e:
                raise GenerationError(f"Failed to create PKCS#12 bundle: {e}", fingerprint=fingerprint, stage="bundle") from e

        return EncryptedPrivateKeyBundle(data=data, fingerprint=fingerprint, friendly_name=friendly_name)

    @staticmethod
    def load_bundle(
        data: bytes, password: str
    ) -> Tuple[rsa.RSAPrivateKey, x509.Certificate, List[x509.Certificate]]:
        """
        Decrypt a PKCS#12 bundle.

        Args:
            data: Bundle bytes
            password: Bundle password

        Returns:
            Tuple of (private key, leaf certificate, additional certificates)

        Raises:
            InvalidInputError: If the password is wrong or the bundle is malformed
        """
        with secret_bytes(password) as secret:
            try:
                private_key, certificate, additional = pkcs12.load_key_and_certificates(data, bytes(secret))
            except ValueError as e:
                raise InvalidInputError(f"Cannot open certificate bundle (wrong password or corrupt file): {e}") from e

        if private_key is None or certificate is None:
            raise InvalidInputError("Certificate bundle does not contain a certificate with its private key")
        return private_key, certificate, list(additional)

    @staticmethod
    def private_key_to_pem(private_key, password: Optional[str] = None) -> bytes:
        """Serialize a private key as PKCS#8 PEM, encrypted when a password is given."""
        if password is None:
            encryption = serialization.NoEncryption()
            return private_key.private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, encryption)

        with secret_bytes(password) as secret:
            encryption = serialization.BestAvailableEncryption(bytes(secret))
            return private_key.private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, encryption)

    def generate_password(self) -> str:
        """Generate a bundle password that satisfies the policy."""
        return generate_password(max(32, self.min_password_length))

    def check_password(self, password: Optional[str]) -> None:
        """
        Enforce the bundle password policy.

        Raises:
            InvalidInputError: If the password is missing or too short
        """
        if not password or len(password) < self.min_password_length:
            raise InvalidInputError(
                f"Bundle password must be at least {self.min_password_length} characters", stage="bundle"
            )

    @staticmethod
    def build_name(subject: Subject) -> x509.Name:
        """
        Build an X.509 name from subject information.

        Attribute order follows the usual C, ST, L, O, OU, CN sequence.
        """
        attributes = [
            (NameOID.COUNTRY_NAME, subject.country),
            (NameOID.STATE_OR_PROVINCE_NAME, subject.state),
            (NameOID.LOCALITY_NAME, subject.locality),
            (NameOID.ORGANIZATION_NAME, subject.organization),
            (NameOID.ORGANIZATIONAL_UNIT_NAME, subject.organizational_unit),
            (NameOID.COMMON_NAME, subject.common_name),
        ]
        try:
            return x509.Name([x509.NameAttribute(oid, value) for oid, value in attributes if value])
        except ValueError as e:
            raise InvalidInputError(f"Invalid subject: {e}") from e

    @staticmethod
    def _build_san_list(sans: Sequence[str]) -> List[x509.GeneralName]:
        if not sans:
            raise InvalidInputError("At least one DNS name or IP address is required in the SAN list")

        general_names: List[x509.GeneralName] = []
        for entry in sans:
            parsed = parse_san(entry)
            if isinstance(parsed, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
                general_names.append(x509.IPAddress(parsed))
            else:
                general_names.append(x509.DNSName(parsed))
        return general_names

    @staticmethod
    def _check_validity(validity_days: int) -> None:
        if validity_days <= 0:
            raise InvalidInputError(f"Validity period must be positive, got {validity_days} days")

    @staticmethod
    def _check_key_size(key_size: int, minimum: int, role: str) -> None:
        if key_size < minimum:
            raise InvalidInputError(f"RSA key size for {role} certificates must be at least {minimum} bits")

    @staticmethod
    def _check_root(root_cert: x509.Certificate, root_key, now: datetime) -> None:
        fingerprint = CertificateParser.compute_fingerprint(root_cert)

        if not isinstance(root_key, rsa.RSAPrivateKey) or not CertificateParser.verify_key_pair(root_cert, root_key):
            raise SigningError("Root private key does not match the root certificate", fingerprint=fingerprint)
        if not CertificateParser.is_ca(root_cert):
            raise SigningError("Root certificate is not a CA (BasicConstraints CA:false)", fingerprint=fingerprint)
        if now > root_cert.not_valid_after_utc:
            raise SigningError(
                f"Root certificate expired on {root_cert.not_valid_after_utc:%Y-%m-%d}", fingerprint=fingerprint
            )

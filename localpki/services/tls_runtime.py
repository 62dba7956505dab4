"""Serving certificate resolution for the TLS listener."""

import ipaddress
import logging
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from localpki.exceptions import InvalidInputError, PKIError
from localpki.models.certificate import OpenMode
from localpki.models.config import AppConfig, StoreLocationConfig
from localpki.services.identity_store import IdentityStore
from localpki.services.key_material import KeyMaterialGenerator
from localpki.services.lifecycle_service import CertificateLifecycleManager
from localpki.services.parser_service import CertificateParser
from localpki.utils.file_utils import PRIVATE_DIR_MODE, FileUtils
from localpki.utils.time_utils import as_utc

logger = logging.getLogger("localpki")

EPHEMERAL_VALIDITY = timedelta(days=1)


@dataclass(frozen=True)
class ServerCredentials:
    """Certificate and key files handed to the TLS listener."""

    cert_path: Path
    key_path: Path
    fingerprint: str
    ephemeral: bool = False


def resolve_server_credentials(config: AppConfig) -> ServerCredentials:
    """
    Resolve the serving certificate from the configured store.

    The leaf is looked up by ``tls.fingerprint`` (or the recorded reference)
    in the personal store of ``tls.store_scope``. On a miss or any store error
    the runtime logs a warning and serves an ephemeral ``localhost``
    certificate instead.

    Args:
        config: Application configuration

    Returns:
        Credentials for the listener
    """
    location = StoreLocationConfig(root=config.store_location().root, scope=config.tls.store_scope)
    store = IdentityStore(location)

    fingerprint = config.tls.fingerprint
    if not fingerprint:
        try:
            fingerprint = CertificateLifecycleManager(config, store=store).read_fingerprint_reference()
        except OSError as e:
            logger.warning(f"Cannot read the fingerprint reference: {e}")

    if not fingerprint:
        logger.warning("No TLS certificate fingerprint configured; serving an ephemeral certificate")
        return generate_ephemeral_credentials(Path(config.paths.runtime_dir).expanduser())

    try:
        with store.open(config.tls.store_name, OpenMode.READ_ONLY) as personal:
            stored = personal.find_by_fingerprint(fingerprint)
        if not stored.entry.has_private_key:
            raise InvalidInputError(
                "Certificate has no private key", store=config.tls.store_name.value, fingerprint=fingerprint
            )
    except (PKIError, OSError) as e:
        logger.warning(f"TLS certificate {fingerprint} unavailable ({e}); serving an ephemeral certificate")
        return generate_ephemeral_credentials(Path(config.paths.runtime_dir).expanduser())

    remaining = stored.certificate.not_valid_after_utc - as_utc()
    if remaining.total_seconds() <= 0:
        logger.warning(f"TLS certificate {fingerprint} has expired; clients will reject it")
    elif remaining.days <= config.security.expiry_warning_days:
        logger.warning(f"TLS certificate {fingerprint} expires in {remaining.days} days")

    logger.info(f"Serving TLS certificate {stored.entry.subject} ({fingerprint})")
    return ServerCredentials(cert_path=stored.cert_path, key_path=stored.key_path, fingerprint=fingerprint)


def generate_ephemeral_credentials(runtime_dir: Path, common_name: str = "localhost") -> ServerCredentials:
    """
    Create a short-lived self-signed certificate for local serving.

    Args:
        runtime_dir: Directory receiving the key and certificate
        common_name: Subject common name (also the DNS SAN)

    Returns:
        Credentials flagged as ephemeral
    """
    now = as_utc()
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=KeyMaterialGenerator.LEAF_MIN_KEY_SIZE)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])

    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + EPHEMERAL_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(
            x509.SubjectAlternativeName(
                [
                    x509.DNSName(common_name),
                    x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
                    x509.IPAddress(ipaddress.ip_address("::1")),
                ]
            ),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )

    FileUtils.ensure_directory(runtime_dir, mode=PRIVATE_DIR_MODE)
    cert_path = runtime_dir / "ephemeral-cert.pem"
    key_path = runtime_dir / "ephemeral-key.pem"
    FileUtils.write_file(cert_path, CertificateParser.to_pem(certificate))
    FileUtils.write_secure_file(key_path, KeyMaterialGenerator.private_key_to_pem(private_key))

    fingerprint = CertificateParser.compute_fingerprint(certificate)
    logger.info(f"Generated ephemeral TLS certificate {fingerprint} valid until {certificate.not_valid_after_utc}")
    return ServerCredentials(cert_path=cert_path, key_path=key_path, fingerprint=fingerprint, ephemeral=True)


def describe_credentials(credentials: ServerCredentials) -> Optional[dict]:
    """Summarize the credentials for the status API."""
    if not credentials.cert_path.exists():
        return None
    info = CertificateParser.describe(CertificateParser.load_certificate_file(credentials.cert_path))
    return {"ephemeral": credentials.ephemeral, "certificate": info.model_dump()}

"""Validation utility for installed certificates."""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from localpki.exceptions import CertificateNotFound, InvalidInputError, PKIError, StoreUnavailable
from localpki.models.certificate import OpenMode, StoreName
from localpki.models.config import AppConfig, Profile
from localpki.models.health import CheckStatus, HealthReport
from localpki.services.identity_store import IdentityStore
from localpki.services.lifecycle_service import (
    LEAF_KEY_FILE,
    PASSWORD_FILE,
    ROOT_KEY_FILE,
    CertificateLifecycleManager,
)
from localpki.utils.file_utils import FileUtils
from localpki.utils.validators import normalize_fingerprint

logger = logging.getLogger("localpki")

LOG_LEVELS = {
    CheckStatus.PASSED: logger.info,
    CheckStatus.WARNING: logger.warning,
    CheckStatus.FAILED: logger.error,
}


class HealthCheckService:
    """Runs the checks behind ``localpki validate``."""

    def __init__(self, config: AppConfig, manager: Optional[CertificateLifecycleManager] = None):
        self.config = config
        self.manager = manager or CertificateLifecycleManager(config)
        self.store: IdentityStore = self.manager.store

    def run(self, fingerprint: Optional[str] = None) -> HealthReport:
        """
        Check configuration, store contents, chain and file permissions.

        Args:
            fingerprint: Leaf to check (defaults to the TLS setting, then the reference)

        Returns:
            Report of all checks
        """
        report = HealthReport()

        fingerprint = self._check_fingerprint_source(report, fingerprint)
        if fingerprint:
            self._check_installed_leaf(report, fingerprint)
        self._check_artifact_permissions(report)

        for check in report.checks:
            LOG_LEVELS[check.status](f"[{check.status.value}] {check.name}: {check.message}")
        return report

    def _check_fingerprint_source(self, report: HealthReport, fingerprint: Optional[str]) -> Optional[str]:
        recorded = self.manager.read_fingerprint_reference()
        configured = fingerprint or self.config.tls.fingerprint

        if configured:
            try:
                configured = normalize_fingerprint(configured)
            except InvalidInputError as e:
                report.add("fingerprint", CheckStatus.FAILED, str(e), configured)
                return None
            report.add("fingerprint", CheckStatus.PASSED, "Leaf fingerprint configured", configured)
            if recorded and recorded != configured:
                report.add(
                    "reference",
                    CheckStatus.WARNING,
                    f"Configured fingerprint differs from the recorded reference {recorded}",
                    configured,
                )
            return configured

        if recorded:
            report.add(
                "fingerprint", CheckStatus.PASSED, "Using the recorded fingerprint reference", recorded
            )
            return recorded

        report.add("fingerprint", CheckStatus.FAILED, "No leaf fingerprint configured or recorded")
        return None

    def _check_installed_leaf(self, report: HealthReport, fingerprint: str) -> None:
        try:
            with self.store.open(StoreName.PERSONAL, OpenMode.READ_ONLY) as personal:
                stored = personal.find_by_fingerprint(fingerprint)
        except (StoreUnavailable, CertificateNotFound) as e:
            report.add("leaf", CheckStatus.FAILED, str(e), fingerprint)
            return

        report.add("leaf", CheckStatus.PASSED, f"Installed as {stored.entry.subject}", fingerprint)

        if not stored.entry.has_private_key:
            report.add("private_key", CheckStatus.FAILED, "Installed leaf has no private key", fingerprint)
        elif not FileUtils.is_owner_only(stored.key_path):
            report.add("private_key", CheckStatus.FAILED, f"{stored.key_path} is readable by others", fingerprint)
        else:
            report.add("private_key", CheckStatus.PASSED, "Private key present with owner-only access", fingerprint)

        try:
            _, chain = self.manager.validate_installed(fingerprint)
        except PKIError as e:
            report.add("chain", CheckStatus.FAILED, str(e), fingerprint)
            return

        codes = ", ".join(sorted(code.value for code in chain.status_codes))
        if chain.is_trusted:
            report.add("chain", CheckStatus.PASSED, f"{len(chain.elements)} elements, {codes}", fingerprint)
        elif chain.only_untrusted_root:
            report.add("chain", CheckStatus.WARNING, chain.message, fingerprint)
        else:
            report.add("chain", CheckStatus.FAILED, f"{codes}: {chain.message}", fingerprint)

        remaining = stored.certificate.not_valid_after_utc - datetime.now(timezone.utc)
        if remaining.total_seconds() > 0 and remaining.days <= self.config.security.expiry_warning_days:
            report.add("expiry", CheckStatus.WARNING, f"Leaf expires in {remaining.days} days", fingerprint)

    def _check_artifact_permissions(self, report: HealthReport) -> None:
        output_dir = Path(self.config.paths.output_dir).expanduser()
        secrets = [output_dir / ROOT_KEY_FILE, output_dir / LEAF_KEY_FILE, output_dir / PASSWORD_FILE]
        secrets += FileUtils.list_files(output_dir / "bundles")

        exposed = [str(path) for path in secrets if path.exists() and not FileUtils.is_owner_only(path)]
        if exposed:
            report.add("permissions", CheckStatus.FAILED, f"Secret files readable by others: {', '.join(exposed)}")
        elif (output_dir / PASSWORD_FILE).exists() and self.config.app.profile == Profile.PRODUCTION:
            report.add(
                "permissions",
                CheckStatus.WARNING,
                "Plaintext bundle password stored on disk; disable security.write_password_file outside development",
            )

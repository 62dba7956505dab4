"""Tests for the installed-certificate health checks."""

import os

import pytest

from localpki.models.certificate import StoreName
from localpki.models.config import Profile
from localpki.models.health import CheckStatus, HealthReport
from localpki.models.lifecycle import InstallRequest
from localpki.services.health_service import HealthCheckService
from localpki.services.lifecycle_service import PASSWORD_FILE


def statuses(report: HealthReport) -> dict:
    return {check.name: check.status for check in report.checks}


@pytest.fixture
def installed(manager, source_material, bundle_password):
    """Install the session leaf and its root."""
    bundles_dir, roots_dir = source_material
    return manager.install_only(
        InstallRequest(bundles_dir=bundles_dir, roots_dir=roots_dir, password=bundle_password)
    )


@pytest.mark.unit
class TestExitCodes:
    """Test the report to exit code mapping."""

    def test_all_passed(self):
        report = HealthReport()
        report.add("fingerprint", CheckStatus.PASSED)

        assert report.passed is True
        assert report.exit_code() == 0
        assert report.exit_code(soft_fail=True) == 0

    def test_warning_only(self):
        report = HealthReport()
        report.add("fingerprint", CheckStatus.PASSED)
        report.add("chain", CheckStatus.WARNING)

        assert report.exit_code() == 1
        assert report.exit_code(soft_fail=True) == 2

    def test_failure_wins_over_soft_fail(self):
        report = HealthReport()
        report.add("chain", CheckStatus.WARNING)
        report.add("leaf", CheckStatus.FAILED)

        assert report.exit_code(soft_fail=True) == 1


@pytest.mark.integration
class TestHealthChecks:
    """Test checks against real store contents."""

    def test_healthy_installation(self, app_config, manager, installed):
        """Test a trusted, recorded leaf passes every check."""
        report = HealthCheckService(app_config, manager).run()

        assert statuses(report) == {
            "fingerprint": CheckStatus.PASSED,
            "leaf": CheckStatus.PASSED,
            "private_key": CheckStatus.PASSED,
            "chain": CheckStatus.PASSED,
        }
        assert report.exit_code() == 0

    def test_nothing_configured(self, app_config, manager):
        """Test a fresh machine fails the fingerprint check."""
        report = HealthCheckService(app_config, manager).run()

        assert statuses(report) == {"fingerprint": CheckStatus.FAILED}
        assert report.exit_code(soft_fail=True) == 1

    def test_configured_leaf_not_installed(self, app_config, manager):
        """Test a configured fingerprint without a store entry."""
        app_config.tls.fingerprint = "AB" * 32

        report = HealthCheckService(app_config, manager).run()

        assert statuses(report)["leaf"] == CheckStatus.FAILED

    def test_untrusted_root_is_warning(self, app_config, manager, source_material, bundle_password):
        """Test a leaf whose root only arrived in its bundle is reported as a warning."""
        bundles_dir, _ = source_material
        manager.install_only(InstallRequest(bundles_dir=bundles_dir, password=bundle_password))

        report = HealthCheckService(app_config, manager).run()

        assert statuses(report)["chain"] == CheckStatus.WARNING
        assert report.exit_code() == 1
        assert report.exit_code(soft_fail=True) == 2

    def test_reference_mismatch_is_warning(self, app_config, manager, installed):
        """Test a configured fingerprint that differs from the recorded one."""
        app_config.tls.fingerprint = "AB" * 32

        report = HealthCheckService(app_config, manager).run()

        assert statuses(report)["reference"] == CheckStatus.WARNING
        assert statuses(report)["leaf"] == CheckStatus.FAILED

    def test_fingerprint_argument_is_normalized(self, app_config, manager, installed):
        """Test a lower-case, colon-separated fingerprint matches the recorded reference."""
        fingerprint = installed.fingerprint.lower()
        spelled = ":".join(fingerprint[i : i + 2] for i in range(0, len(fingerprint), 2))

        report = HealthCheckService(app_config, manager).run(spelled)

        assert "reference" not in statuses(report)
        assert statuses(report)["leaf"] == CheckStatus.PASSED
        assert report.exit_code() == 0

    def test_malformed_fingerprint_argument_fails(self, app_config, manager, installed):
        """Test a fingerprint argument that is no SHA-256 value."""
        report = HealthCheckService(app_config, manager).run("not-a-fingerprint")

        assert statuses(report)["fingerprint"] == CheckStatus.FAILED
        assert report.exit_code(soft_fail=True) == 1

    def test_expiry_warning(self, app_config, manager, installed):
        """Test a leaf inside the warning window."""
        app_config.security.expiry_warning_days = 400

        report = HealthCheckService(app_config, manager).run()

        assert statuses(report)["expiry"] == CheckStatus.WARNING
        assert report.exit_code(soft_fail=True) == 2

    def test_exposed_private_key(self, app_config, manager, installed):
        """Test a store key readable by others fails."""
        with manager.store.open(StoreName.PERSONAL) as personal:
            stored = personal.find_by_fingerprint(installed.fingerprint)
        os.chmod(stored.key_path, 0o644)

        report = HealthCheckService(app_config, manager).run()

        assert statuses(report)["private_key"] == CheckStatus.FAILED

    def test_exposed_artifact(self, app_config, manager, installed):
        """Test a bundle in the output directory readable by others fails."""
        bundles = os.path.join(app_config.paths.output_dir, "bundles")
        os.makedirs(bundles)
        exposed = os.path.join(bundles, f"{installed.fingerprint}.pfx")
        with open(exposed, "wb") as f:
            f.write(b"bundle")
        os.chmod(exposed, 0o644)

        report = HealthCheckService(app_config, manager).run()

        assert statuses(report)["permissions"] == CheckStatus.FAILED

    def test_password_file_in_production(self, app_config, manager, installed):
        """Test the plaintext password file is flagged outside development."""
        app_config.app.profile = Profile.PRODUCTION
        password_file = os.path.join(app_config.paths.output_dir, str(PASSWORD_FILE))
        os.makedirs(os.path.dirname(password_file))
        with open(password_file, "w") as f:
            f.write("secret\n")
        os.chmod(password_file, 0o600)

        report = HealthCheckService(app_config, manager).run()

        assert statuses(report)["permissions"] == CheckStatus.WARNING

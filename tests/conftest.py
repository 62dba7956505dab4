"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from localpki.models.certificate import Subject
from localpki.models.config import AppConfig, LoggingSettings, PathSettings, StoreLocationConfig
from localpki.services.chain_validator import ChainValidator
from localpki.services.identity_store import IdentityStore
from localpki.services.key_material import KeyMaterialGenerator
from localpki.services.lifecycle_service import CertificateLifecycleManager
from localpki.services.parser_service import CertificateParser

BUNDLE_PASSWORD = "correct-horse-battery-staple-42"


@pytest.fixture(scope="session")
def generator():
    """Create key material generator."""
    return KeyMaterialGenerator()


@pytest.fixture(scope="session")
def root_subject():
    """Create the root CA subject used throughout the tests."""
    return Subject(common_name="Test Root CA", organization="Test Organization", country="US")


@pytest.fixture(scope="session")
def root_pair(generator, root_subject):
    """Generate a root CA once per session (RSA 4096 is slow)."""
    return generator.generate_root_certificate(root_subject, validity_days=730)


@pytest.fixture(scope="session")
def impostor_root_pair(generator, root_subject):
    """A second root with the same subject but a different key."""
    return generator.generate_root_certificate(root_subject, validity_days=730)


@pytest.fixture(scope="session")
def leaf_pair(generator, root_pair):
    """Generate a leaf signed by the session root."""
    root_cert, root_key = root_pair
    return generator.generate_leaf_certificate(
        Subject(common_name="localhost", organization="Test Organization"),
        ["localhost", "127.0.0.1"],
        root_cert,
        root_key,
        validity_days=365,
    )


@pytest.fixture(scope="session")
def leaf_bundle(generator, root_pair, leaf_pair):
    """Bundle the session leaf with its key and root."""
    leaf_cert, leaf_key = leaf_pair
    return generator.bundle_private_key(leaf_cert, leaf_key, root_pair[0], BUNDLE_PASSWORD)


@pytest.fixture
def bundle_password():
    return BUNDLE_PASSWORD


@pytest.fixture
def store_location(tmp_path):
    """Store location rooted in the test's temporary directory."""
    return StoreLocationConfig(root=tmp_path / "stores")


@pytest.fixture
def identity_store(store_location):
    """Create identity store instance with test directory."""
    return IdentityStore(store_location)


@pytest.fixture
def validator():
    return ChainValidator()


@pytest.fixture
def app_config(tmp_path):
    """Application configuration with every path inside the test directory."""
    return AppConfig(
        paths=PathSettings(
            output_dir=str(tmp_path / "certs"),
            store_root=str(tmp_path / "stores"),
            runtime_dir=str(tmp_path / "runtime"),
        ),
        logging=LoggingSettings(file=str(tmp_path / "logs" / "localpki.log")),
    )


@pytest.fixture
def source_material(tmp_path, leaf_bundle, root_pair):
    """Bundles and roots directories as handed to a container at startup."""
    bundles_dir = tmp_path / "source" / "bundles"
    roots_dir = tmp_path / "source" / "roots"
    bundles_dir.mkdir(parents=True)
    roots_dir.mkdir(parents=True)

    (bundles_dir / f"{leaf_bundle.fingerprint}.pfx").write_bytes(leaf_bundle.data)
    (roots_dir / "anything-goes").write_bytes(CertificateParser.to_pem(root_pair[0]))
    return bundles_dir, roots_dir


@pytest.fixture
def manager(app_config):
    """Create lifecycle manager bound to the test configuration."""
    return CertificateLifecycleManager(app_config)


@pytest.fixture
def write_config(tmp_path):
    """Write a config.yaml for the test configuration and return its path."""

    def _write(extra: str = "") -> Path:
        config_path = tmp_path / "config.yaml"
        config_path.write_text(
            f"""
paths:
  output_dir: "{tmp_path / 'certs'}"
  store_root: "{tmp_path / 'stores'}"
  runtime_dir: "{tmp_path / 'runtime'}"
logging:
  level: "INFO"
  file: "{tmp_path / 'logs' / 'localpki.log'}"
{extra}
"""
        )
        return config_path

    return _write


@pytest.fixture
def client(app_config):
    """Create FastAPI test client with dependencies bound to the test directory."""
    from localpki.api.dependencies import get_config, get_identity_store, get_lifecycle_manager
    from main import app

    def override_config():
        return app_config

    def override_identity_store():
        return IdentityStore(app_config.store_location())

    def override_lifecycle_manager():
        return CertificateLifecycleManager(app_config)

    app.dependency_overrides[get_config] = override_config
    app.dependency_overrides[get_identity_store] = override_identity_store
    app.dependency_overrides[get_lifecycle_manager] = override_lifecycle_manager

    client = TestClient(app)
    yield client

    # Clean up
    app.dependency_overrides.clear()

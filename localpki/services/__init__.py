"""Service layer for business logic."""

from .chain_validator import ChainValidator
from .health_service import HealthCheckService
from .identity_store import IdentityStore, StoreHandle, StoredCertificate
from .key_material import KeyMaterialGenerator
from .lifecycle_service import CertificateLifecycleManager
from .parser_service import CertificateParser
from .yaml_service import YAMLService

__all__ = [
    "YAMLService",
    "CertificateParser",
    "KeyMaterialGenerator",
    "IdentityStore",
    "StoreHandle",
    "StoredCertificate",
    "ChainValidator",
    "CertificateLifecycleManager",
    "HealthCheckService",
]

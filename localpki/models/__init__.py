"""Data models for LocalPKI."""

from .certificate import CertificateInfo, InstalledEntry, OpenMode, StoreName, StoreScope, Subject
from .chain import ChainResult, ChainStatus, ChainSummary
from .config import AppConfig, StoreLocationConfig
from .lifecycle import InstallRequest, LifecycleResult, LifecycleState, SetupRequest

__all__ = [
    "Subject",
    "StoreName",
    "StoreScope",
    "OpenMode",
    "CertificateInfo",
    "InstalledEntry",
    "ChainStatus",
    "ChainResult",
    "ChainSummary",
    "AppConfig",
    "StoreLocationConfig",
    "LifecycleState",
    "SetupRequest",
    "InstallRequest",
    "LifecycleResult",
]

"""FastAPI dependencies."""

import logging
from functools import lru_cache

from localpki.config import load_config
from localpki.models.config import AppConfig
from localpki.services.identity_store import IdentityStore
from localpki.services.lifecycle_service import CertificateLifecycleManager

logger = logging.getLogger("localpki")


@lru_cache
def get_config() -> AppConfig:
    """
    Get application configuration.

    Loaded once per process; environment overrides are applied at that point.

    Returns:
        Application configuration
    """
    return load_config()


def get_identity_store() -> IdentityStore:
    """
    Get identity store for the configured location.

    Returns:
        Identity store
    """
    return IdentityStore(get_config().store_location())


def get_lifecycle_manager() -> CertificateLifecycleManager:
    """
    Get lifecycle manager instance.

    Returns:
        Lifecycle manager
    """
    config = get_config()
    return CertificateLifecycleManager(config, store=IdentityStore(config.store_location()))

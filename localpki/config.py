"""Configuration loading.

Configuration is read from ``config.yaml`` and the ``LOCALPKI_*`` environment
variables once at process start. Components receive the resulting models and
never consult the environment themselves.
"""

import logging
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import ValidationError

from localpki.exceptions import InvalidInputError
from localpki.models.config import AppConfig
from localpki.services.yaml_service import YAMLService

logger = logging.getLogger("localpki")

DEFAULT_CONFIG_PATH = Path("config.yaml")

ENV_CONFIG = "LOCALPKI_CONFIG"
ENV_STORE_ROOT = "LOCALPKI_STORE_ROOT"
ENV_STORE_SCOPE = "LOCALPKI_STORE_SCOPE"
ENV_THUMBPRINT = "LOCALPKI_CERT_THUMBPRINT"
ENV_PASSWORD = "LOCALPKI_CERT_PASSWORD"


def load_config(path: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    Load application configuration.

    Args:
        path: Config file (defaults to ``$LOCALPKI_CONFIG``, then ``./config.yaml``)
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated configuration

    Raises:
        InvalidInputError: If the file is missing, unreadable or fails validation
    """
    environ = os.environ if environ is None else environ

    explicit = path is not None or bool(environ.get(ENV_CONFIG))
    config_path = Path(path or environ.get(ENV_CONFIG) or DEFAULT_CONFIG_PATH).expanduser()

    data: dict[str, Any] = {}
    if config_path.exists():
        try:
            data = YAMLService.load_yaml(config_path)
        except yaml.YAMLError as e:
            raise InvalidInputError(f"Invalid YAML in {config_path}: {e}") from e
    elif explicit:
        raise InvalidInputError(f"Config file not found: {config_path}")

    _apply_environment(data, environ)

    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise InvalidInputError(f"Invalid configuration in {config_path}: {e}") from e

    logger.debug(f"Loaded configuration from {config_path if config_path.exists() else 'defaults'}")
    return config


def _apply_environment(data: dict[str, Any], environ: Mapping[str, str]) -> None:
    if environ.get(ENV_STORE_ROOT):
        data.setdefault("paths", {})["store_root"] = environ[ENV_STORE_ROOT]
    if environ.get(ENV_STORE_SCOPE):
        data.setdefault("store", {})["scope"] = environ[ENV_STORE_SCOPE]
        data.setdefault("tls", {})["store_scope"] = environ[ENV_STORE_SCOPE]
    if environ.get(ENV_THUMBPRINT):
        data.setdefault("tls", {})["fingerprint"] = environ[ENV_THUMBPRINT]

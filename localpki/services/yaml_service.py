"""YAML file operations service."""

import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict

import yaml

logger = logging.getLogger("localpki")

DATETIME_FIELDS = ("installed_at", "not_before", "not_after")


class YAMLService:
    """Service for YAML file operations."""

    @staticmethod
    def load_yaml(file_path: Path) -> Dict[str, Any]:
        """
        Load YAML file and return as dictionary.

        Args:
            file_path: Path to YAML file

        Returns:
            Parsed YAML content as dictionary

        Raises:
            FileNotFoundError: If file doesn't exist
            yaml.YAMLError: If file is not valid YAML
        """
        if not file_path.exists():
            raise FileNotFoundError(f"YAML file not found: {file_path}")

        with open(file_path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
                logger.debug(f"Loaded YAML from: {file_path}")
                return data or {}
            except yaml.YAMLError as e:
                logger.error(f"Error parsing YAML file {file_path}: {e}")
                raise

    @staticmethod
    def dump_yaml(data: Dict[str, Any]) -> str:
        """
        Serialize a dictionary to YAML text with datetime and Enum formatting.

        Args:
            data: Data to serialize

        Returns:
            YAML document
        """
        return yaml.safe_dump(
            YAMLService._format_nested_dict(data),
            default_flow_style=False,
            allow_unicode=True,
            sort_keys=False,
        )

    @staticmethod
    def load_entry_yaml(file_path: Path) -> Dict[str, Any]:
        """
        Load store entry metadata with datetime parsing.

        Args:
            file_path: Path to entry YAML file

        Returns:
            Parsed metadata
        """
        data = YAMLService.load_yaml(file_path)

        for field in DATETIME_FIELDS:
            if field in data and isinstance(data[field], str):
                try:
                    data[field] = datetime.fromisoformat(data[field].replace("Z", "+00:00"))
                except ValueError as e:
                    logger.warning(f"Error parsing datetime field {field}: {e}")

        return data

    @staticmethod
    def _format_value(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, Path):
            return str(value)
        if isinstance(value, dict):
            return YAMLService._format_nested_dict(value)
        if isinstance(value, (list, tuple)):
            return [YAMLService._format_value(item) for item in value]
        return value

    @staticmethod
    def _format_nested_dict(data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Recursively format nested dictionaries, converting datetime and Enum objects.

        Args:
            data: Dictionary to format

        Returns:
            Formatted dictionary
        """
        return {key: YAMLService._format_value(value) for key, value in data.items()}

"""Logging configuration."""

import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from localpki.models.config import AppConfig

LOGGER_NAME = "localpki"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

# Log file the current handlers write to
_active_log_file: Optional[Path] = None


def setup_logger(config: Optional["AppConfig"] = None, level: Optional[str] = None) -> logging.Logger:
    """
    Configure the ``localpki`` logger.

    Console records go to stderr so command output on stdout stays clean.
    Calling again with the same log file keeps the existing handlers; a
    different file replaces them.

    Args:
        config: Application configuration (level, format, file)
        level: Level name overriding ``logging.level``

    Returns:
        Configured logger instance
    """
    global _active_log_file

    logger = logging.getLogger(LOGGER_NAME)
    log_file = Path(config.logging.file).expanduser() if config and config.logging.file else None

    if logger.handlers and log_file == _active_log_file and level is None:
        return logger

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    level_name = level or (config.logging.level if config else "INFO")
    numeric_level = getattr(logging, level_name.upper(), logging.INFO)
    logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter(config.logging.format))
        logger.addHandler(file_handler)

    _active_log_file = log_file
    return logger

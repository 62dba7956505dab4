"""Utility modules."""

from .file_utils import FileUtils
from .logger import setup_logger
from .secret_utils import generate_password, scrub, secret_bytes
from .validators import normalize_fingerprint, parse_san, subject_matches

__all__ = [
    "FileUtils",
    "setup_logger",
    "generate_password",
    "scrub",
    "secret_bytes",
    "normalize_fingerprint",
    "parse_san",
    "subject_matches",
]

"""Input validation utilities."""

import ipaddress
import re
from fnmatch import fnmatchcase
from typing import Union

from localpki.exceptions import InvalidInputError

# SHA-256 over DER, upper-case hex without separators
FINGERPRINT_PATTERN = re.compile(r"^[0-9A-F]{64}$")

PLACEHOLDER_MARKERS = ("YOUR_CERTIFICATE", "THUMBPRINT_HERE")

DOMAIN_PATTERN = re.compile(r"^(\*\.)?([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)*[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_fingerprint(value: str) -> str:
    """
    Normalize a thumbprint for lookup.

    Strips spaces and colons and upper-cases the hex digits.

    Args:
        value: Thumbprint as typed by an operator or copied from a tool

    Returns:
        Normalized thumbprint

    Raises:
        InvalidInputError: If the result is not a SHA-256 thumbprint

    Example:
        >>> normalize_fingerprint("ab:cd ...")  # doctest: +SKIP
        'ABCD...'
    """
    normalized = value.replace(" ", "").replace(":", "").strip().upper()
    if not FINGERPRINT_PATTERN.match(normalized):
        raise InvalidInputError(f"Invalid certificate fingerprint: {value!r}")
    return normalized


def is_placeholder_thumbprint(value: str) -> bool:
    """Return True for template placeholders shipped in example configs."""
    upper = value.upper()
    return any(marker in upper for marker in PLACEHOLDER_MARKERS)


def validate_common_name(cn: str) -> None:
    """
    Validate common name format.

    Args:
        cn: Common name to validate

    Raises:
        InvalidInputError: If common name is invalid
    """
    if not cn or len(cn.strip()) == 0:
        raise InvalidInputError("Common name cannot be empty")

    if len(cn) > 64:
        raise InvalidInputError("Common name too long (max 64 characters)")


def parse_san(value: str) -> Union[str, ipaddress.IPv4Address, ipaddress.IPv6Address]:
    """
    Classify a Subject Alternative Name entry.

    Args:
        value: DNS name or IP address

    Returns:
        An ip_address object for IPs, the DNS name string otherwise

    Raises:
        InvalidInputError: If the entry is neither
    """
    value = value.strip()
    try:
        return ipaddress.ip_address(value)
    except ValueError:
        pass

    if not value or not DOMAIN_PATTERN.match(value):
        raise InvalidInputError(f"Invalid SAN entry: {value!r}")
    return value


def subject_matches(subject: str, pattern: str) -> bool:
    """
    Match an RFC 4514 subject string against a pattern.

    Glob wildcards (*, ?, [) make the match a case-sensitive fnmatch; otherwise
    the subject must equal the pattern exactly.
    """
    if any(char in pattern for char in "*?["):
        return fnmatchcase(subject, pattern)
    return subject == pattern

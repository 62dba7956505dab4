"""Helpers for handling process-transient secrets."""

import secrets
import string
from contextlib import contextmanager
from typing import Iterator

PASSWORD_ALPHABET = string.ascii_letters + string.digits + "-_.!#%+="


def generate_password(length: int = 32) -> str:
    """
    Generate a random password from a cryptographically secure RNG.

    Args:
        length: Number of characters (minimum 16)

    Returns:
        Generated password
    """
    if length < 16:
        raise ValueError("Generated passwords must be at least 16 characters")
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def scrub(buffer: bytearray) -> None:
    """Overwrite a mutable secret buffer with zeros."""
    for index in range(len(buffer)):
        buffer[index] = 0


@contextmanager
def secret_bytes(value: str) -> Iterator[bytearray]:
    """
    Hold a password as a mutable byte buffer that is zeroed on exit.

    Python str objects are immutable and cannot be wiped; callers should keep
    the plaintext in this buffer for as long as it is needed.
    """
    buffer = bytearray(value.encode("utf-8"))
    try:
        yield buffer
    finally:
        scrub(buffer)

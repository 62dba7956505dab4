"""Timestamp helpers."""

from datetime import datetime, timezone
from typing import Optional


def as_utc(value: Optional[datetime] = None) -> datetime:
    """Return an aware UTC datetime; naive values are taken as UTC, None means now."""
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value

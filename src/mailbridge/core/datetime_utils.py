"""Datetime helpers shared across the application."""

from __future__ import annotations

from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

__all__ = [
    "ensure_utc",
    "parse_header_date",
    "parse_internal_date",
    "utcnow",
]

_INTERNALDATE_FORMAT = "%d-%b-%Y %H:%M:%S %z"


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Return ``value`` converted to UTC; naive values are assumed UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_header_date(value: str | None) -> datetime | None:
    """Parse an RFC 5322 ``Date`` header, returning ``None`` when malformed."""
    if not value:
        return None
    try:
        return ensure_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError, IndexError):
        return None


def parse_internal_date(value: str | None) -> datetime | None:
    """Parse an IMAP INTERNALDATE such as `` 7-Jul-2024 09:15:00 +0200``."""
    if not value:
        return None
    try:
        parsed = datetime.strptime(value.strip(), _INTERNALDATE_FORMAT)
    except ValueError:
        return None
    return parsed.astimezone(UTC)

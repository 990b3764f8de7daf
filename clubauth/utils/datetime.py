# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""DateTime utilities.

All timestamps are stored in UTC (PostgreSQL TIMESTAMPTZ) and all Python
datetimes are timezone-aware. Drivers that hand back naive values (SQLite in
tests) are normalised through ensure_utc().

Usage:
    from clubauth.utils.datetime import utc_now, minutes_from_now

    expires_at = minutes_from_now(60)
"""

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Timezone-aware datetime representing current UTC time.
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Ensure a datetime is timezone-aware UTC.

    Args:
        dt: A datetime object (naive or aware) or None.

    Returns:
        Timezone-aware UTC datetime or None.

    Note:
        - If dt is None, returns None
        - If dt is naive, assumes UTC and adds tzinfo
        - If dt is aware, converts to UTC
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def minutes_from_now(minutes: int) -> datetime:
    """Get a datetime N minutes from now.

    Args:
        minutes: Number of minutes to add.

    Returns:
        Timezone-aware UTC datetime.
    """
    return utc_now() + timedelta(minutes=minutes)


def is_expired(expiry: datetime | None) -> bool:
    """Check if a datetime has passed (is expired).

    Args:
        expiry: The expiry datetime to check.

    Returns:
        True if expired or expiry is None, False otherwise.
    """
    if expiry is None:
        return True

    expiry_utc = ensure_utc(expiry)
    return utc_now() > expiry_utc

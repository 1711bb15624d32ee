# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""DateTime utilities for the student lifecycle service.

All ledger timestamps are stored in UTC and every Python datetime handled
by the service is timezone-aware. Some database drivers (SQLite) hand
back naive values, so anything read from storage goes through
ensure_utc() before it is compared.

Usage:
------
    from src.utils.datetime import utc_now

    # For SQLAlchemy model defaults
    created_at = mapped_column(DateTime(timezone=True), default=utc_now)
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
        # Naive datetime - assume UTC
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def minutes_ago(minutes: int, now: datetime | None = None) -> datetime:
    """Get a datetime N minutes before now.

    Args:
        minutes: Number of minutes to go back.
        now: Reference time, defaults to the current UTC time.

    Returns:
        Timezone-aware UTC datetime.
    """
    return (ensure_utc(now) or utc_now()) - timedelta(minutes=minutes)


def seconds_from_now(seconds: float, now: datetime | None = None) -> datetime:
    """Get a datetime N seconds after now.

    Args:
        seconds: Number of seconds to add.
        now: Reference time, defaults to the current UTC time.

    Returns:
        Timezone-aware UTC datetime.
    """
    return (ensure_utc(now) or utc_now()) + timedelta(seconds=seconds)


def format_iso(dt: datetime | None) -> str | None:
    """Format a datetime as ISO 8601 string.

    Args:
        dt: Datetime to format.

    Returns:
        ISO 8601 formatted string or None.
    """
    if dt is None:
        return None

    dt_utc = ensure_utc(dt)
    return dt_utc.isoformat()

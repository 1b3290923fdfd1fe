# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""DateTime utilities for DormDB.

All timestamps written to the ledger are timezone-aware UTC. SQLite hands
them back naive, so values read from storage go through ensure_utc().

Usage:
------
    from dormdb.utils.datetime import utc_now

    # For SQLAlchemy model defaults
    created_at = mapped_column(DateTime(timezone=True), default=utc_now)

    # For Pydantic model defaults
    generated_at: datetime = Field(default_factory=utc_now)
"""

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Timezone-aware datetime representing current UTC time.

    Example:
        >>> now = utc_now()
        >>> now.tzinfo
        datetime.timezone.utc
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


def utc_today_start() -> datetime:
    """Get the start of today in UTC (midnight).

    Returns:
        Timezone-aware datetime for today at 00:00:00 UTC.
    """
    now = utc_now()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def format_iso(dt: datetime | None) -> str | None:
    """Format a datetime as an ISO 8601 string in UTC.

    Args:
        dt: Datetime to format, or None.

    Returns:
        ISO 8601 string or None.
    """
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()


def utc_days_ago_start(days: int) -> datetime:
    """Get midnight UTC of the day ``days`` days before today."""
    return utc_today_start() - timedelta(days=days)


def utc_month_start() -> datetime:
    """Get the first day of the current month at 00:00:00 UTC."""
    return utc_today_start().replace(day=1)

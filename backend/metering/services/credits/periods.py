"""Billing period arithmetic for monthly grants."""

import calendar
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def fixed_boundary_anchor(boundary_day: int) -> datetime:
    """Synthetic anchor for accounts billed on an admin-configured day of month."""
    if not 1 <= boundary_day <= 28:
        raise ValueError(f"Billing boundary day must be between 1 and 28, got {boundary_day}")
    return datetime(2000, 1, boundary_day, tzinfo=timezone.utc)


def current_period(anchor: datetime, now: datetime) -> tuple[datetime, datetime]:
    """Return ``(period_start, next_period_start)`` containing ``now``.

    Periods recur monthly on the anchor's day and time of day. A 31st anchor
    falls on the last day of shorter months without drifting.
    """
    anchor = as_utc(anchor)
    now = as_utc(now)

    months = (now.year - anchor.year) * 12 + (now.month - anchor.month)
    start = add_months(anchor, months)
    if start > now:
        months -= 1
        start = add_months(anchor, months)
    return start, add_months(anchor, months + 1)

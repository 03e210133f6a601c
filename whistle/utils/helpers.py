"""Shared time helpers.

as_utc:        normalise SQLite-naive datetimes to UTC-aware
utcnow:        current time, UTC-aware
hours_between: elapsed hours as a float
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Normalise a datetime to UTC-aware regardless of whether SQLite stored it naive.

    SQLite's DateTime columns return naive datetimes; PostgreSQL returns tz-aware.
    All comparisons against utcnow() must go through this helper so the same
    code works in both environments.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def hours_between(earlier: datetime, later: datetime) -> float:
    """Return ``later - earlier`` in hours (negative if reversed)."""
    return (as_utc(later) - as_utc(earlier)).total_seconds() / 3600.0

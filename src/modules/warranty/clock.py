"""Warranty clock arithmetic.

Every function takes the current instant explicitly; nothing in the warranty
core reads the wall clock on its own.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

ONE_DAY = timedelta(days=1)


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as a UTC-aware datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def compute_expiry(finished_at: datetime, warranty_days: int) -> datetime:
    """Expiry instant of a warranty that starts at *finished_at*.

    Aware-datetime addition in Python is wall-clock arithmetic, so "N days"
    lands on the same local time N calendar days later even across a DST
    change in the zone *finished_at* carries.
    """
    return finished_at + timedelta(days=warranty_days)


def remaining_days(now: datetime, expires_at: datetime) -> int:
    """Whole days left before *expires_at*, rounded up, never negative."""
    delta = expires_at - now
    if delta <= timedelta(0):
        return 0
    return -((-delta) // ONE_DAY)


def elapsed_days(since: datetime, now: datetime) -> int:
    """Whole days elapsed since *since*, rounded down, never negative."""
    delta = now - since
    if delta <= timedelta(0):
        return 0
    return delta // ONE_DAY


def is_expired(now: datetime, expires_at: datetime) -> bool:
    return now >= expires_at

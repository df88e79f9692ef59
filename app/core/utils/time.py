from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    # Timestamps are stored as "UTC-naive" datetimes (tzinfo stripped) for SQLite + SQLAlchemy.
    # Any tz-naive timestamp produced by the app is UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def optional_utc_naive(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return to_utc_naive(value)

"""Timestamp helpers shared by the reconciler and the clients."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

# The source drops the UTC offset from its timestamps
SOURCE_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    Naive values are interpreted in the local timezone of the process.
    """
    return value.astimezone(timezone.utc)


def to_local_naive(value: datetime) -> datetime:
    """Convert an aware (or local naive) datetime to naive local time."""
    return value.astimezone().replace(tzinfo=None)


def to_iso(value: datetime) -> str:
    """Format as ISO-8601 UTC with millisecond precision, e.g. 2022-08-26T16:20:27.000Z."""
    utc = as_utc(value)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 string into an aware UTC datetime.

    Raises:
        ValueError: If the string is not a valid ISO-8601 timestamp.
    """
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    return int(as_utc(value).timestamp() * 1000)


def from_epoch_ms(value: int | float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def abs_diff(a: datetime, b: datetime) -> timedelta:
    return abs(as_utc(a) - as_utc(b))

"""Datetime helpers: lax input from remote payloads -> aware UTC datetimes."""

from __future__ import annotations

from datetime import UTC, datetime

import pendulum

# Values above this are epoch milliseconds rather than seconds.
_EPOCH_MS_THRESHOLD = 20_000_000_000


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(UTC)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601 for JSON serialization."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.isoformat()


def parse_timestamp(value: str | int | float | datetime | None) -> datetime | None:
    """Parse a remote timestamp into an aware datetime.

    Accepts:
    - ISO 8601 strings (``2026-02-02T22:21:29.975Z``)
    - epoch seconds or epoch milliseconds
    - datetimes (naive ones are taken as UTC)

    Returns None for None, empty strings and unparseable input.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > _EPOCH_MS_THRESHOLD else value
        return datetime.fromtimestamp(seconds, UTC)

    text = value.strip()
    if not text:
        return None
    if text.lstrip("-").isdigit():
        return parse_timestamp(int(text))
    try:
        parsed = pendulum.parse(text, tz="UTC", strict=False)
    except ValueError:
        return None
    if isinstance(parsed, pendulum.Date) and not isinstance(parsed, pendulum.DateTime):
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(parsed.year, parsed.month, parsed.day, tz="UTC")
    if not isinstance(parsed, pendulum.DateTime):
        return None
    return datetime.fromtimestamp(parsed.timestamp(), UTC)

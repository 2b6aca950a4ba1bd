# fleet_trip_sync/common/timeutils.py
"""
Timezone handling at the vendor boundary.

Three clocks meet in this system:

- The vendor formats and parses date strings in its own fixed offset
  (GMT+8 by default) and sends epoch numbers in either milliseconds or
  seconds depending on the endpoint.
- Storage is always timezone-aware UTC.
- People read timestamps in a separate fixed local offset (GMT+1 default).

Every conversion between them lives here so that no other module formats
vendor strings or guesses epoch units on its own.

Design Decisions:
-----------------
- Fixed offsets (`datetime.timezone(timedelta(hours=n))`) rather than named
  zones: the vendor does not observe DST and neither does the display zone.
- Naive datetimes handed to these helpers are assumed to be UTC.
- Implausible timestamps (before 2000 or more than five minutes in the
  future) are rejected rather than clamped; devices with a reset clock send
  1970 or 2080 values that would otherwise poison checkpoints.
"""

from datetime import UTC, datetime, timedelta, timezone
from typing import Any, Final

__all__: list[str] = [
    'EARLIEST_PLAUSIBLE',
    'MAX_FUTURE_SKEW',
    'VENDOR_DATETIME_FORMAT',
    'ensure_utc',
    'format_vendor_datetime',
    'is_plausible_timestamp',
    'parse_epoch',
    'parse_vendor_timestamp',
    'to_display_time',
    'utc_now',
]

VENDOR_DATETIME_FORMAT: Final[str] = '%Y-%m-%d %H:%M:%S'

EARLIEST_PLAUSIBLE: Final[datetime] = datetime(2000, 1, 1, tzinfo=UTC)
MAX_FUTURE_SKEW: Final[timedelta] = timedelta(minutes=5)

# 2000-01-01T00:00:00Z in milliseconds. Smaller epoch values are seconds.
EPOCH_MILLIS_THRESHOLD: Final[int] = 946_684_800_000


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def fixed_offset(hours: int) -> timezone:
    """Build a fixed-offset tzinfo for a whole number of hours."""
    return timezone(timedelta(hours=hours))


def ensure_utc(value: datetime) -> datetime:
    """Return `value` as aware UTC, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def format_vendor_datetime(value: datetime, offset_hours: int = 8) -> str:
    """
    Format a datetime the way vendor window parameters expect it.

    Args:
        value: Instant to format (naive values are taken as UTC).
        offset_hours: Vendor fixed UTC offset.

    Returns:
        'YYYY-MM-DD HH:MM:SS' in the vendor's local offset.

    Example:
        >>> format_vendor_datetime(datetime(2024, 1, 1, 0, 0, tzinfo=UTC))
        '2024-01-01 08:00:00'
    """
    return ensure_utc(value).astimezone(fixed_offset(offset_hours)).strftime(
        VENDOR_DATETIME_FORMAT
    )


def parse_epoch(value: float) -> datetime:
    """
    Convert a vendor epoch number to aware UTC.

    Values below the year-2000 millisecond threshold are seconds; everything
    else is milliseconds.
    """
    if value < EPOCH_MILLIS_THRESHOLD:
        return datetime.fromtimestamp(value, tz=UTC)
    return datetime.fromtimestamp(value / 1000.0, tz=UTC)


def parse_vendor_timestamp(value: Any, offset_hours: int = 8) -> datetime | None:
    """
    Parse any timestamp shape the vendor emits into aware UTC.

    Handles epoch numbers (ms or s, also as digit strings), vendor-local
    'YYYY-MM-DD HH:MM:SS' strings, ISO-8601 strings (with or without an
    explicit offset; without one the vendor offset is assumed) and datetimes.

    Args:
        value: Raw timestamp value.
        offset_hours: Vendor fixed UTC offset for strings without one.

    Returns:
        Aware UTC datetime, or None when the value is empty or unparseable.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=fixed_offset(offset_hours)).astimezone(UTC)
        return value.astimezone(UTC)

    if isinstance(value, int | float):
        if value <= 0:
            return None
        try:
            return parse_epoch(float(value))
        except (OverflowError, OSError, ValueError):
            return None

    if not isinstance(value, str):
        return None

    text: str = value.strip()
    if not text:
        return None

    if text.isdigit():
        return parse_vendor_timestamp(int(text), offset_hours)

    try:
        parsed: datetime = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=fixed_offset(offset_hours))
    return parsed.astimezone(UTC)


def is_plausible_timestamp(value: datetime, now: datetime | None = None) -> bool:
    """True when `value` is after 2000-01-01 and at most 5 minutes ahead of `now`."""
    reference: datetime = ensure_utc(now) if now is not None else utc_now()
    candidate: datetime = ensure_utc(value)
    return EARLIEST_PLAUSIBLE <= candidate <= reference + MAX_FUTURE_SKEW


def to_display_time(value: datetime, offset_hours: int = 1) -> datetime:
    """Shift an instant into the display offset (GMT+1 by default)."""
    return ensure_utc(value).astimezone(fixed_offset(offset_hours))

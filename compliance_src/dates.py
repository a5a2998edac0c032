"""Timezone-safe calendar-day arithmetic.

Every date that enters a cycle or window computation goes through this
module. Date-only values are plain ``datetime.date`` objects, which carry
no time of day and no offset, so day differences are ordinal subtraction
and cannot drift by one across DST changes or a caller's local timezone.
Timestamps are normalized to UTC before their calendar day is taken.
"""

from datetime import date, datetime, time, timedelta, timezone

_MONTH_ABBR = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)


def to_utc_datetime(value) -> datetime:
    """Normalize a timestamp to an aware UTC datetime.

    Naive datetimes are taken to already be UTC. A bare date becomes UTC
    midnight of that day. Strings are parsed as ISO-8601.
    """
    if isinstance(value, str):
        value = _parse_iso_datetime(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    raise TypeError(f"Cannot convert {type(value).__name__} to a UTC datetime")


def _parse_iso_datetime(text: str) -> datetime:
    text = text.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if "T" not in text and " " not in text:
        return datetime.combine(date.fromisoformat(text), time.min, tzinfo=timezone.utc)
    return datetime.fromisoformat(text)


def parse_date(value) -> date:
    """Parse a date-only string (YYYY-MM-DD) into a calendar day.

    Also accepts full ISO timestamps (the UTC calendar day is kept),
    datetime objects and date objects.

    Raises:
        ValueError: if the value is empty or not a valid date.
    """
    if isinstance(value, datetime):
        return to_utc_datetime(value).date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("Empty date string")
        if "T" in text or " " in text:
            return to_utc_datetime(text).date()
        return date.fromisoformat(text)
    raise ValueError(f"Cannot parse date from {value!r}")


def parse_optional_date(value) -> date | None:
    """Like parse_date, but None and empty strings give None."""
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return parse_date(value)


def diff_days(a, b) -> int:
    """Whole calendar days from a to b (b - a). Negative when b is earlier."""
    return parse_date(b).toordinal() - parse_date(a).toordinal()


def is_before(a, b) -> bool:
    """True when calendar day a is strictly before b."""
    return diff_days(a, b) > 0


def is_after(a, b) -> bool:
    """True when calendar day a is strictly after b."""
    return diff_days(a, b) < 0


def add_days(value, days: int) -> date:
    """Shift a calendar day by a whole number of days."""
    return parse_date(value) + timedelta(days=days)


def today_utc() -> date:
    """Current calendar day in UTC."""
    return datetime.now(timezone.utc).date()


def month_key(value) -> str:
    """YYYY-MM key for a date or timestamp."""
    d = parse_date(value)
    return f"{d.year:04d}-{d.month:02d}"


def month_label(key: str) -> str:
    """Display label for a YYYY-MM key, e.g. '2025-01' -> 'Jan 2025'.

    Month names are fixed English abbreviations regardless of locale.
    """
    year, month = key.split("-")
    return f"{_MONTH_ABBR[int(month) - 1]} {int(year)}"


def month_range(end, count: int) -> list[str]:
    """The `count` month keys ending with the month of `end`, oldest first."""
    end_day = parse_date(end)
    year, month = end_day.year, end_day.month
    keys = []
    for _ in range(max(0, count)):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            month = 12
            year -= 1
    return list(reversed(keys))

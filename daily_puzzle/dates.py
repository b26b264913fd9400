"""UTC calendar-day helpers.

"Today" is always the UTC calendar day; the cutover is UTC midnight
regardless of the player's local time zone.
"""
from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone

DATE_KEY_FORMAT = "%Y-%m-%d"
_DATE_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utc_now() -> datetime:
    """Naive UTC timestamp, as stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def today_key(now: datetime | None = None) -> str:
    """Return today's date key (YYYY-MM-DD, UTC)."""
    return (now or utc_now()).strftime(DATE_KEY_FORMAT)


def is_date_key(value: str) -> bool:
    """Check a string is shaped like YYYY-MM-DD and is a real date."""
    if not _DATE_KEY_RE.match(value):
        return False
    try:
        parse_date_key(value)
    except ValueError:
        return False
    return True


def parse_date_key(date_key: str) -> date:
    return datetime.strptime(date_key, DATE_KEY_FORMAT).date()


def day_start(date_key: str) -> datetime:
    """UTC midnight opening the given day."""
    return datetime.combine(parse_date_key(date_key), time.min)


def day_bounds(date_key: str) -> tuple[datetime, datetime]:
    """Half-open [midnight, next midnight) range for a day."""
    start = day_start(date_key)
    return start, start + timedelta(days=1)


def day_of_year(date_key: str) -> int:
    """1-based ordinal day within the year (Jan 1 -> 1)."""
    return parse_date_key(date_key).timetuple().tm_yday


def sunday_first_weekday(date_key: str) -> int:
    """Weekday index with Sunday=0 ... Saturday=6."""
    return (parse_date_key(date_key).weekday() + 1) % 7


def days_between(earlier: date, later: date) -> int:
    return (later - earlier).days

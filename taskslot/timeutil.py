"""Date and time helpers shared across the scheduling modules."""

from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from typing import Iterator, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError


def get_zone(name: Optional[str]) -> ZoneInfo:
    """Resolve an IANA timezone name, defaulting to UTC."""
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"Unknown timezone: {name}", field="timezone") from e


def parse_hhmm(value: Union[str, time]) -> time:
    """Parse an ``HH:mm`` string into a time."""
    if isinstance(value, time):
        return value
    try:
        hours, minutes = value.strip().split(":")
        return time(int(hours), int(minutes))
    except (AttributeError, ValueError) as e:
        raise ValidationError(f"Invalid HH:mm time: {value!r}") from e


def format_hhmm(value: time) -> str:
    return value.strftime("%H:%M")


def day_of_week(day: Union[date, datetime]) -> int:
    """Day of week with 0 = Sunday through 6 = Saturday."""
    return (day.weekday() + 1) % 7


def combine(day: date, at: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, at, tzinfo=tz)


def normalize_datetime(value: Union[str, date, datetime, None], tz: ZoneInfo) -> Optional[datetime]:
    """
    Normalize an inbound date value to an aware datetime in ``tz``.

    Accepts ISO strings (with or without offset, ``Z`` suffix included),
    dates (interpreted as local midnight) and datetimes. Naive values are
    taken to be in ``tz``.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        text = value.strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            try:
                parsed = datetime.combine(date.fromisoformat(text), time())
            except ValueError as e:
                raise ValidationError(f"Invalid datetime: {value!r}") from e
        value = parsed
    elif not isinstance(value, datetime):
        value = datetime.combine(value, time())

    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)


def parse_date(value: Union[str, date, datetime, None]) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError as e:
        raise ValidationError(f"Invalid date: {value!r}") from e


def minutes_between(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() // 60)


def iter_days(start: date, end: date) -> Iterator[date]:
    """Yield each date from start through end inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def utc_now() -> datetime:
    return datetime.now(dt_timezone.utc)

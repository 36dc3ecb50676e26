"""Display-timezone helpers shared by the engine and the report builder."""

import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Union

# Reports are bucketed in South Africa Standard Time (UTC+2) unless configured otherwise.
DEFAULT_DISPLAY_OFFSET = timedelta(hours=2)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so every comparison is between instants."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware datetime."""
    if isinstance(value, datetime):
        return ensure_aware(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_aware(datetime.fromisoformat(text))


def to_display_time(value: datetime, offset: timedelta = DEFAULT_DISPLAY_OFFSET) -> datetime:
    """Convert an instant to the fixed display offset."""
    return ensure_aware(value).astimezone(timezone(offset))


def display_date(value: datetime, offset: timedelta = DEFAULT_DISPLAY_OFFSET) -> str:
    """Calendar day (YYYY-MM-DD) an instant falls on at the display offset."""
    return to_display_time(value, offset).strftime("%Y-%m-%d")


def report_window(
    date_from: Union[str, date],
    date_to: Union[str, date],
    offset: timedelta = DEFAULT_DISPLAY_OFFSET,
) -> tuple[datetime, datetime]:
    """
    Build the inclusive instant range covering whole display-offset days.

    ``report_window("2024-03-01", "2024-03-07")`` spans 2024-03-01 00:00:00+02:00
    to 2024-03-07 23:59:59+02:00.
    """
    if isinstance(date_from, str):
        date_from = date.fromisoformat(date_from)
    if isinstance(date_to, str):
        date_to = date.fromisoformat(date_to)
    if date_to < date_from:
        raise ValueError(f"Report end {date_to} is before start {date_from}")

    tz = timezone(offset)
    start = datetime.combine(date_from, time(0, 0, 0), tzinfo=tz)
    end = datetime.combine(date_to, time(23, 59, 59), tzinfo=tz)
    return start, end


def days_in_window(date_from: Union[str, date], date_to: Union[str, date]) -> list[str]:
    """Every calendar day between two dates inclusive, as YYYY-MM-DD strings."""
    if isinstance(date_from, str):
        date_from = date.fromisoformat(date_from)
    if isinstance(date_to, str):
        date_to = date.fromisoformat(date_to)
    days = []
    current = date_from
    while current <= date_to:
        days.append(current.isoformat())
        current += timedelta(days=1)
    return days


def format_api_timestamp(value: datetime) -> str:
    """Second-precision UTC timestamp in the form the Freshdesk API expects."""
    return ensure_aware(value).astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_minutes_to_hours(minutes: float) -> str:
    if minutes < 0:
        minutes = 0
    hours = math.floor(minutes / 60)
    remaining = round(minutes % 60)
    return f"{hours}h {remaining}m"


def format_time_range(min_minutes: float, max_minutes: float) -> str:
    return f"{format_minutes_to_hours(min_minutes)} - {format_minutes_to_hours(max_minutes)}"

"""Date and time utility functions."""

from typing import Optional, Dict, Any, Union
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: Union[str, datetime, None], default_tz: timezone = timezone.utc) -> Optional[datetime]:
    """
    Parse ISO format datetime string with timezone handling.

    Handles:
    - ISO format with timezone: "2024-11-21T10:00:00Z" or "2024-11-21T10:00:00+00:00"
    - ISO format without timezone: "2024-11-21T10:00:00"
    - Date only: "2024-11-21"
    - datetime instances (naive values get default_tz)

    Args:
        value: ISO format datetime string or datetime
        default_tz: Timezone to use if none is specified (default: UTC)

    Returns:
        Parsed datetime object with timezone, or None if parsing fails
    """
    if not value:
        return None

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=default_tz)

    try:
        if 'T' in value:
            dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
        else:
            dt = datetime.fromisoformat(value)

        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=default_tz)
        return dt
    except (ValueError, AttributeError, TypeError):
        return None


def format_datetime_display(dt: Optional[datetime], default: str = "Unknown date") -> str:
    """
    Format datetime to human-readable display string.

    Format: "November 21, 2024 at 10:00 AM"
    """
    if not dt:
        return default

    try:
        return dt.strftime("%B %d, %Y at %I:%M %p")
    except (AttributeError, ValueError, TypeError):
        return default


def _event_boundary(event: Dict[str, Any], key: str) -> Optional[datetime]:
    boundary = event.get(key) or {}
    if not boundary:
        return None
    value = boundary.get('dateTime') or boundary.get('date')
    if not value:
        return None
    return parse_iso_datetime(value)


def extract_event_datetime(event: Dict[str, Any]) -> Optional[datetime]:
    """Extract the start datetime from a Google Calendar event."""
    if not event:
        return None
    return _event_boundary(event, 'start')


def extract_event_end_datetime(event: Dict[str, Any]) -> Optional[datetime]:
    """Extract the end datetime from a Google Calendar event."""
    if not event:
        return None
    return _event_boundary(event, 'end')


def ranges_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval overlap: touching ranges do not overlap."""
    return start_a < end_b and start_b < end_a

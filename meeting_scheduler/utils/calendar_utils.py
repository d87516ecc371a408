"""Calendar event utility functions."""

from typing import List, Dict, Any, Optional
from datetime import datetime, timedelta, timezone
from meeting_scheduler.utils.date_utils import (
    extract_event_datetime,
    extract_event_end_datetime,
    ranges_overlap,
)


def extract_attendees(event: Dict[str, Any]) -> str:
    """
    Extract attendee names from calendar event.

    Args:
        event: Google Calendar event dictionary

    Returns:
        Comma-separated string of attendee names, or "Not specified" if none
    """
    if not event:
        return "Not specified"

    event_attendees = event.get('attendees', [])
    if not event_attendees:
        return "Not specified"

    attendee_names = [
        att.get('displayName') or att.get('email', '')
        for att in event_attendees
        if att.get('displayName') or att.get('email')
    ]

    attendees = ", ".join(attendee_names)
    return attendees if attendees else "Not specified"


def sort_events_by_date(events: List[Dict[str, Any]], reverse: bool = False) -> List[Dict[str, Any]]:
    """Sort calendar events by start date, earliest first unless reverse is set."""
    if not events:
        return []

    def get_event_date(event):
        dt = extract_event_datetime(event)
        if not dt:
            return datetime.min.replace(tzinfo=timezone.utc)
        return dt

    return sorted(events, key=get_event_date, reverse=reverse)


def find_conflicting_events(
    events: List[Dict[str, Any]],
    start: datetime,
    end: datetime
) -> List[Dict[str, Any]]:
    """
    Return the events that overlap the [start, end) window, earliest first.

    Cancelled events and events marked transparent (free) never conflict.
    """
    conflicts = []
    for event in events or []:
        if event.get('status') == 'cancelled' or event.get('transparency') == 'transparent':
            continue
        event_start = extract_event_datetime(event)
        event_end = extract_event_end_datetime(event)
        if not event_start or not event_end:
            continue
        if ranges_overlap(start, end, event_start, event_end):
            conflicts.append(event)
    return sort_events_by_date(conflicts)


def summarize_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """Compact view of an event for conflict prompts."""
    start = extract_event_datetime(event)
    end = extract_event_end_datetime(event)
    return {
        "id": event.get('id'),
        "title": event.get('summary') or "Busy",
        "start_time": start.isoformat() if start else None,
        "end_time": end.isoformat() if end else None,
        "attendees": extract_attendees(event),
    }


def suggest_alternative_slots(
    events: List[Dict[str, Any]],
    preferred_start: datetime,
    duration_minutes: int,
    now: Optional[datetime] = None,
    max_suggestions: int = 3,
    search_hours: int = 4,
    step_minutes: int = 30,
    business_hours: tuple = (8, 18)
) -> List[Dict[str, datetime]]:
    """
    Find free slots of the same length around a preferred start time.

    Candidates are spaced ``step_minutes`` apart within ``search_hours`` either
    side of the preferred start, fall on weekdays inside business hours, are not
    in the past and do not overlap any busy event. Closest to the preferred
    start first.

    Returns:
        List of {"start_time", "end_time"} dicts
    """
    duration = timedelta(minutes=duration_minutes)
    open_hour, close_hour = business_hours
    step = timedelta(minutes=step_minutes)
    offset = -timedelta(hours=search_hours)

    candidates = []
    while offset <= timedelta(hours=search_hours):
        start = preferred_start + offset
        end = start + duration
        offset += step
        if start == preferred_start:
            continue
        if now and start < now:
            continue
        if start.weekday() >= 5 or end.date() != start.date():
            continue
        if start.hour < open_hour or (end.hour, end.minute) > (close_hour, 0):
            continue
        if find_conflicting_events(events, start, end):
            continue
        candidates.append({"start_time": start, "end_time": end})

    candidates.sort(key=lambda slot: abs(slot["start_time"] - preferred_start))
    return candidates[:max_suggestions]

"""Utility functions for common operations."""

from meeting_scheduler.utils.date_utils import (
    utc_now,
    parse_iso_datetime,
    format_datetime_display,
    extract_event_datetime,
    extract_event_end_datetime,
)
from meeting_scheduler.utils.calendar_utils import (
    extract_attendees,
    sort_events_by_date,
    find_conflicting_events,
)
from meeting_scheduler.utils.logging_utils import (
    StructuredLogger,
    generate_correlation_id,
    log_pipeline_step
)

__all__ = [
    'utc_now',
    'parse_iso_datetime',
    'format_datetime_display',
    'extract_event_datetime',
    'extract_event_end_datetime',
    'extract_attendees',
    'sort_events_by_date',
    'find_conflicting_events',
    'StructuredLogger',
    'generate_correlation_id',
    'log_pipeline_step',
]

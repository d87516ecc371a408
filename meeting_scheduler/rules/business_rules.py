"""Business rules for meeting drafts.

Every check is a pure function over draft data that returns a
ValidationResult. Errors block workflow progression, warnings are surfaced
to the user but never block.
"""

import re
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from meeting_scheduler.memory.schemas import Attendee, MeetingDraft, ValidationResult
from meeting_scheduler.utils.date_utils import utc_now


EMAIL_REGEX = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

MIN_MEETING_DURATION_MINUTES = 15
MAX_MEETING_DURATION_HOURS = 8
MAX_ADVANCE_BOOKING_DAYS = 365
MIN_ADVANCE_BOOKING_MINUTES = 5
MAX_ATTENDEES = 100
MIN_ATTENDEES_FOR_ONLINE = 1
MANY_ATTENDEES_THRESHOLD = 10
LONG_MEETING_HOURS = 2
BUSINESS_HOURS_START = 8
BUSINESS_HOURS_END = 18

ONLINE_MEETING_NO_ATTENDEES = "Online meetings must have at least one attendee"
PHYSICAL_MEETING_NO_LOCATION = "Physical meetings must have a location specified"
INVALID_MEETING_TYPE = "Meeting type must be either 'online' or 'physical'"
INVALID_EMAIL_FORMAT = "Invalid email format"
INVALID_TIME_RANGE = "End time must be after start time"
INVALID_DATE_FORMAT = "Invalid date format for meeting times"
MEETING_TOO_SHORT = f"Meeting duration must be at least {MIN_MEETING_DURATION_MINUTES} minutes"
MEETING_TOO_LONG = f"Meeting duration cannot exceed {MAX_MEETING_DURATION_HOURS} hours"
BOOKING_TOO_FAR_AHEAD = f"Cannot book meetings more than {MAX_ADVANCE_BOOKING_DAYS} days in advance"
BOOKING_TOO_SOON = f"Meeting must be scheduled at least {MIN_ADVANCE_BOOKING_MINUTES} minutes in advance"
TOO_MANY_ATTENDEES = f"Cannot have more than {MAX_ATTENDEES} attendees"
DUPLICATE_ATTENDEES = "Duplicate attendee emails are not allowed"

OUTSIDE_BUSINESS_HOURS = "Meeting is scheduled outside typical business hours (8 AM - 6 PM)"
WEEKEND_MEETING = "Meeting is scheduled on a weekend"
LONG_MEETING = f"Meeting duration is longer than {LONG_MEETING_HOURS} hours"
MANY_ATTENDEES = f"Meeting has a large number of attendees ({MANY_ATTENDEES_THRESHOLD}+)"


def validate_meeting_type(meeting_type: Optional[str], draft: MeetingDraft) -> ValidationResult:
    """Check the requirements attached to a meeting type."""
    errors: List[str] = []

    if meeting_type == "online":
        if not enforce_attendee_requirement(meeting_type, draft.attendees):
            errors.append(ONLINE_MEETING_NO_ATTENDEES)
    elif meeting_type == "physical":
        if not (draft.location and draft.location.strip()):
            errors.append(PHYSICAL_MEETING_NO_LOCATION)
    else:
        errors.append(INVALID_MEETING_TYPE)

    return ValidationResult.from_lists(errors)


def enforce_attendee_requirement(meeting_type: Optional[str], attendees: List[Attendee]) -> bool:
    """Online meetings need at least one attendee; other types have no minimum."""
    if meeting_type == "online":
        return len(attendees or []) >= MIN_ATTENDEES_FOR_ONLINE
    return True


def validate_time_constraints(
    start_time: datetime,
    end_time: datetime,
    now: Optional[datetime] = None
) -> ValidationResult:
    """Duration, booking window and business hours checks for a time window."""
    now = now or utc_now()
    errors: List[str] = []
    warnings: List[str] = []

    if end_time <= start_time:
        return ValidationResult.from_lists([INVALID_TIME_RANGE])

    duration = end_time - start_time
    if duration < timedelta(minutes=MIN_MEETING_DURATION_MINUTES):
        errors.append(MEETING_TOO_SHORT)
    if duration > timedelta(hours=MAX_MEETING_DURATION_HOURS):
        errors.append(MEETING_TOO_LONG)

    lead_time = start_time - now
    if lead_time > timedelta(days=MAX_ADVANCE_BOOKING_DAYS):
        errors.append(BOOKING_TOO_FAR_AHEAD)
    if lead_time < timedelta(minutes=MIN_ADVANCE_BOOKING_MINUTES):
        errors.append(BOOKING_TOO_SOON)

    ends_late = (end_time.hour, end_time.minute) > (BUSINESS_HOURS_END, 0)
    if start_time.hour < BUSINESS_HOURS_START or ends_late:
        warnings.append(OUTSIDE_BUSINESS_HOURS)
    if start_time.weekday() >= 5:
        warnings.append(WEEKEND_MEETING)
    if duration > timedelta(hours=LONG_MEETING_HOURS):
        warnings.append(LONG_MEETING)

    return ValidationResult.from_lists(errors, warnings)


def validate_email_format(email: Optional[str]) -> bool:
    """Plain format check for a single address."""
    if not email or not isinstance(email, str):
        return False
    return bool(EMAIL_REGEX.match(email.strip().lower()))


def find_duplicate_emails(emails: Iterable[str]) -> List[str]:
    seen = set()
    duplicates: List[str] = []
    for email in emails:
        normalized = email.strip().lower()
        if normalized in seen and normalized not in duplicates:
            duplicates.append(normalized)
        seen.add(normalized)
    return duplicates


def validate_attendees(attendees: List[Attendee]) -> ValidationResult:
    """Count, format and duplicate checks on an attendee list."""
    errors: List[str] = []
    warnings: List[str] = []

    if len(attendees) > MAX_ATTENDEES:
        errors.append(TOO_MANY_ATTENDEES)

    for attendee in attendees:
        if not validate_email_format(attendee.email):
            errors.append(f"{INVALID_EMAIL_FORMAT}: {attendee.email}")

    duplicates = find_duplicate_emails(attendee.email for attendee in attendees)
    if duplicates:
        errors.append(f"{DUPLICATE_ATTENDEES}: {', '.join(duplicates)}")

    if len(attendees) >= MANY_ATTENDEES_THRESHOLD:
        warnings.append(MANY_ATTENDEES)

    return ValidationResult.from_lists(errors, warnings)


def validate_meeting(draft: MeetingDraft, now: Optional[datetime] = None) -> ValidationResult:
    """Full draft validation: type requirements, time window and attendees."""
    result = ValidationResult()

    if draft.type:
        result = result.merge(validate_meeting_type(draft.type, draft))

    if draft.start_time and draft.end_time:
        result = result.merge(validate_time_constraints(draft.start_time, draft.end_time, now=now))

    if draft.attendees:
        result = result.merge(validate_attendees(draft.attendees))

    return result


def validate_meeting_creation_requirements(draft: MeetingDraft, now: Optional[datetime] = None) -> ValidationResult:
    """Everything that must hold before a calendar event may be written."""
    errors: List[str] = []
    if not (draft.title and draft.title.strip()):
        errors.append("Meeting title is required")
    if not draft.start_time:
        errors.append("Meeting start time is required")
    if not draft.end_time:
        errors.append("Meeting end time is required")
    if not draft.type:
        errors.append("Meeting type is required")

    result = ValidationResult.from_lists(errors)
    return result.merge(validate_meeting(draft, now=now))


def validate_workflow_sequence(
    calendar_access_verified: bool,
    time_collection_complete: bool,
    availability_checked: bool,
    meeting_type: Optional[str] = None,
    attendee_collection_complete: bool = False,
    has_conflicts: bool = False,
    conflicts_resolved: bool = False
) -> ValidationResult:
    """Check that the workflow steps before creation actually ran. Availability gaps only warn."""
    errors: List[str] = []

    if not calendar_access_verified:
        errors.append("Calendar access must be verified before meeting creation")
    if not time_collection_complete:
        errors.append("Meeting time and date must be collected before creation")
    if meeting_type == "online" and not attendee_collection_complete:
        errors.append("Attendee collection must be completed for online meetings")

    result = ValidationResult.from_lists(errors)
    return result.merge(validate_availability_check(availability_checked, has_conflicts, conflicts_resolved))


def validate_calendar_access(has_access: bool, needs_refresh: bool, token_valid: bool) -> ValidationResult:
    errors: List[str] = []
    if not has_access:
        errors.append("Calendar access is required for meeting creation")
    if needs_refresh:
        errors.append("Calendar access token needs to be refreshed")
    if not token_valid:
        errors.append("Calendar access token is invalid")
    return ValidationResult.from_lists(errors)


def validate_availability_check(
    availability_checked: bool,
    has_conflicts: bool = False,
    conflicts_resolved: bool = False
) -> ValidationResult:
    warnings: List[str] = []
    if not availability_checked:
        warnings.append("Calendar availability was not checked - scheduling conflicts may exist")
    if has_conflicts and not conflicts_resolved:
        warnings.append("Calendar conflicts detected but not resolved - meeting may overlap with existing events")
    return ValidationResult.from_lists([], warnings)

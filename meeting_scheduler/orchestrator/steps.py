"""Workflow steps and step-level helpers."""

import re
from typing import Optional

INTENT_DETECTION = "intent_detection"
CALENDAR_ACCESS_VERIFICATION = "calendar_access_verification"
MEETING_TYPE_SELECTION = "meeting_type_selection"
TIME_DATE_COLLECTION = "time_date_collection"
AVAILABILITY_CHECK = "availability_check"
CONFLICT_RESOLUTION = "conflict_resolution"
ATTENDEE_COLLECTION = "attendee_collection"
MEETING_DETAILS_COLLECTION = "meeting_details_collection"
VALIDATION = "validation"
AGENDA_GENERATION = "agenda_generation"
AGENDA_APPROVAL = "agenda_approval"
APPROVAL = "approval"
CREATION = "creation"
COMPLETED = "completed"

STEP_ORDER = (
    INTENT_DETECTION,
    CALENDAR_ACCESS_VERIFICATION,
    MEETING_TYPE_SELECTION,
    TIME_DATE_COLLECTION,
    AVAILABILITY_CHECK,
    CONFLICT_RESOLUTION,
    ATTENDEE_COLLECTION,
    MEETING_DETAILS_COLLECTION,
    VALIDATION,
    AGENDA_GENERATION,
    AGENDA_APPROVAL,
    APPROVAL,
    CREATION,
    COMPLETED,
)

STEP_LABELS = {
    INTENT_DETECTION: "Understanding your request",
    CALENDAR_ACCESS_VERIFICATION: "Checking calendar access",
    MEETING_TYPE_SELECTION: "Choosing meeting type",
    TIME_DATE_COLLECTION: "Picking a time",
    AVAILABILITY_CHECK: "Checking availability",
    CONFLICT_RESOLUTION: "Resolving conflicts",
    ATTENDEE_COLLECTION: "Adding attendees",
    MEETING_DETAILS_COLLECTION: "Collecting details",
    VALIDATION: "Validating meeting",
    AGENDA_GENERATION: "Drafting agenda",
    AGENDA_APPROVAL: "Reviewing agenda",
    APPROVAL: "Final approval",
    CREATION: "Creating meeting",
    COMPLETED: "Done",
}

ONLINE_KEYWORDS = ("zoom", "teams", "meet", "google meet", "online", "virtual", "remote", "video call")
PHYSICAL_KEYWORDS = ("office", "room", "location", "address", "in person", "in-person", "physical")


def is_known_step(step: Optional[str]) -> bool:
    return step in STEP_ORDER


def step_index(step: str) -> int:
    return STEP_ORDER.index(step)


def progress_percent(step: str) -> int:
    if not is_known_step(step):
        return 0
    return round(step_index(step) * 100 / (len(STEP_ORDER) - 1))


def _mentions(text: str, keywords) -> bool:
    return any(re.search(rf"\b{re.escape(keyword)}\b", text) for keyword in keywords)


def detect_meeting_type(text: str) -> Optional[str]:
    """Keyword detection of 'online' or 'physical'; None when unclear or both match."""
    lowered = (text or "").lower()
    online = _mentions(lowered, ONLINE_KEYWORDS)
    physical = _mentions(lowered, PHYSICAL_KEYWORDS)
    if online and not physical:
        return "online"
    if physical and not online:
        return "physical"
    return None

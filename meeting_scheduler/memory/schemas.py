"""Pydantic schemas for conversations, meeting drafts and their storage records."""

import uuid
from datetime import datetime
from typing import Optional, List, Dict, Any, Literal, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from meeting_scheduler.utils.date_utils import utc_now, parse_iso_datetime


MessageRole = Literal["user", "assistant"]
ConversationMode = Literal["casual", "scheduling", "approval"]
MeetingType = Literal["physical", "online"]
MeetingStatus = Literal["draft", "pending_approval", "approved", "created"]


def _new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex}"


def _coerce_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    parsed = parse_iso_datetime(value)
    if parsed is None:
        raise ValueError(f"Invalid date format: {value}")
    return parsed


class Message(BaseModel):
    """A single chat message. Immutable once appended."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_message_id)
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: Optional[Dict[str, Any]] = None


class Attendee(BaseModel):
    """Meeting attendee."""
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_validated: bool = False
    is_required: bool = True
    trusted: bool = False

    @property
    def display_name(self) -> str:
        """First/last name when known, otherwise derived from the email local part."""
        if self.first_name:
            return f"{self.first_name} {self.last_name or ''}".strip()
        local_part = self.email.split("@")[0]
        return " ".join(part.capitalize() for part in local_part.replace("_", ".").split(".") if part)


def _coerce_attendees(value: Any) -> Any:
    if value is None:
        return value
    coerced = []
    for item in value:
        if isinstance(item, str):
            coerced.append({"email": item.strip()})
        else:
            coerced.append(item)
    return coerced


class MeetingDraft(BaseModel):
    """The accumulating meeting record built across conversation turns."""
    title: Optional[str] = None
    type: Optional[MeetingType] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    location: Optional[str] = None
    attendees: List[Attendee] = Field(default_factory=list)
    agenda: Optional[str] = None
    purpose: Optional[str] = None
    status: MeetingStatus = "draft"
    event_id: Optional[str] = None
    meeting_link: Optional[str] = None

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def normalize_times(cls, value):
        return _coerce_datetime(value)

    @field_validator("attendees", mode="before")
    @classmethod
    def normalize_attendees(cls, value):
        return _coerce_attendees(value)

    @property
    def duration_minutes(self) -> Optional[int]:
        if self.start_time and self.end_time:
            return int((self.end_time - self.start_time).total_seconds() // 60)
        return None

    def attendee_emails(self) -> List[str]:
        return [attendee.email for attendee in self.attendees]


class MeetingDraftUpdate(BaseModel):
    """Partial update for a MeetingDraft. Only explicitly set fields are merged."""
    title: Optional[str] = None
    type: Optional[MeetingType] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    location: Optional[str] = None
    attendees: Optional[List[Attendee]] = None
    agenda: Optional[str] = None
    purpose: Optional[str] = None
    status: Optional[MeetingStatus] = None
    event_id: Optional[str] = None
    meeting_link: Optional[str] = None

    @field_validator("start_time", "end_time", mode="before")
    @classmethod
    def normalize_times(cls, value):
        return _coerce_datetime(value)

    @field_validator("attendees", mode="before")
    @classmethod
    def normalize_attendees(cls, value):
        return _coerce_attendees(value)


# Fields merged from a MeetingDraftUpdate, in merge order.
DRAFT_MERGE_FIELDS = (
    "title",
    "type",
    "start_time",
    "end_time",
    "location",
    "attendees",
    "agenda",
    "purpose",
    "status",
    "event_id",
    "meeting_link",
)

# Fields that cannot be cleared to None because the draft always carries a value.
_NON_NULLABLE_DRAFT_FIELDS = {"attendees": list, "status": lambda: "draft"}


class InvalidTimeRangeError(ValueError):
    """A merge would leave the draft ending at or before its start."""

    def __init__(self, start_time: datetime, end_time: datetime):
        super().__init__(f"End time {end_time.isoformat()} is not after start time {start_time.isoformat()}")
        self.start_time = start_time
        self.end_time = end_time


def merge_meeting_draft(
    draft: Optional[MeetingDraft],
    update: MeetingDraftUpdate
) -> Tuple[MeetingDraft, List[str]]:
    """
    Merge an update into a draft with last-write-wins per field.

    Only fields explicitly present in the update take part in the merge, so an
    explicit None clears a field while an omitted field leaves it untouched.

    Returns:
        (merged draft, names of fields whose value changed)

    Raises:
        InvalidTimeRangeError: if the merged draft would end at or before its start
    """
    base = draft or MeetingDraft()
    changes: Dict[str, Any] = {}

    for field_name in DRAFT_MERGE_FIELDS:
        if field_name not in update.model_fields_set:
            continue
        value = getattr(update, field_name)
        if value is None and field_name in _NON_NULLABLE_DRAFT_FIELDS:
            value = _NON_NULLABLE_DRAFT_FIELDS[field_name]()
        if getattr(base, field_name) != value:
            changes[field_name] = value

    if not changes:
        return base, []
    merged = base.model_copy(update=changes, deep=True)
    if merged.start_time and merged.end_time and merged.end_time <= merged.start_time:
        raise InvalidTimeRangeError(merged.start_time, merged.end_time)
    return merged, list(changes)


def is_time_collection_complete(draft: Optional[MeetingDraft]) -> bool:
    """A start time plus either an end time or a type (which implies the default duration)."""
    return bool(draft and draft.start_time and (draft.end_time or draft.type))


class ValidationResult(BaseModel):
    """Outcome of a rule check: errors block progression, warnings do not."""
    is_valid: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @classmethod
    def from_lists(cls, errors: List[str], warnings: Optional[List[str]] = None) -> "ValidationResult":
        return cls(is_valid=not errors, errors=list(errors), warnings=list(warnings or []))

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        return ValidationResult.from_lists(self.errors + other.errors, self.warnings + other.warnings)


class CalendarAccessStatus(BaseModel):
    """Result of checking the user's calendar access."""
    has_access: bool = False
    needs_refresh: bool = False
    token_valid: bool = False
    error: Optional[str] = None


class TimeSlot(BaseModel):
    start_time: datetime
    end_time: datetime


class AvailabilityResult(BaseModel):
    """Cached outcome of a calendar availability check for a time window."""
    is_available: bool
    start_time: datetime
    end_time: datetime
    conflicts: List[Dict[str, Any]] = Field(default_factory=list)
    suggested_alternatives: List[TimeSlot] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=utc_now)


class ConversationContextRecord(BaseModel):
    """Persisted per-conversation state owned by the context engine."""
    conversation_id: str
    user_id: str
    messages: List[Message] = Field(default_factory=list)
    mode: ConversationMode = "casual"
    meeting_draft: Optional[MeetingDraft] = None
    compression_level: int = Field(default=0, ge=0)
    calendar_access_status: Optional[CalendarAccessStatus] = None
    availability_checked: bool = False
    availability_result: Optional[AvailabilityResult] = None
    time_collection_complete: bool = False
    workflow_state: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class MessageHistoryPage(BaseModel):
    """Slice of the full stored history of a conversation."""
    messages: List[Message]
    total_count: int
    has_more: bool

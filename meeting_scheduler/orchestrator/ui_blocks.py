"""Structured prompts sent to the chat UI and the interaction payloads it sends back.

Both are tagged unions discriminated by ``kind``.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from meeting_scheduler.memory.schemas import Attendee, MeetingType


# Prompts

class MeetingTypeOption(BaseModel):
    value: MeetingType
    label: str
    description: str


class MeetingTypeSelectionPrompt(BaseModel):
    kind: Literal["meeting_type_selection"] = "meeting_type_selection"
    question: str = "Is this an online meeting or an in-person meeting?"
    options: List[MeetingTypeOption] = Field(default_factory=lambda: [
        MeetingTypeOption(value="online", label="Online", description="Video call with a meeting link"),
        MeetingTypeOption(value="physical", label="In person", description="Meet at a physical location"),
    ])
    selected_type: Optional[MeetingType] = None


class AttendeeManagementPrompt(BaseModel):
    kind: Literal["attendee_management"] = "attendee_management"
    attendees: List[Attendee] = Field(default_factory=list)
    meeting_type: Optional[MeetingType] = None
    min_attendees: int = 0
    invalid_emails: List[str] = Field(default_factory=list)


class ConflictResolutionPrompt(BaseModel):
    kind: Literal["conflict_resolution"] = "conflict_resolution"
    requested_start: str
    requested_end: str
    conflicts: List[Dict[str, Any]] = Field(default_factory=list)
    alternatives: List[Dict[str, Any]] = Field(default_factory=list)


class AgendaEditorPrompt(BaseModel):
    kind: Literal["agenda_editor"] = "agenda_editor"
    agenda: str
    duration_minutes: Optional[int] = None
    is_fallback: bool = False
    errors: List[str] = Field(default_factory=list)


class MeetingApprovalPrompt(BaseModel):
    kind: Literal["meeting_approval"] = "meeting_approval"
    summary: str
    meeting: Dict[str, Any]


StructuredPrompt = Annotated[
    Union[
        MeetingTypeSelectionPrompt,
        AttendeeManagementPrompt,
        ConflictResolutionPrompt,
        AgendaEditorPrompt,
        MeetingApprovalPrompt,
    ],
    Field(discriminator="kind"),
]


# Interactions

class MeetingTypeInteraction(BaseModel):
    kind: Literal["meeting_type_selection"]
    action: Literal["select_type"] = "select_type"
    type: MeetingType
    location: Optional[str] = None


class AttendeeInteraction(BaseModel):
    kind: Literal["attendee_management"]
    action: Literal["update_attendees", "continue"]
    attendees: List[str] = Field(default_factory=list)


class ConflictInteraction(BaseModel):
    kind: Literal["conflict_resolution"]
    action: Literal["keep_time", "reschedule", "select_alternative"]
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    alternative: Optional[int] = Field(default=None, ge=0)


class AgendaInteraction(BaseModel):
    kind: Literal["agenda_editor"]
    action: Literal["update", "regenerate", "approve"]
    agenda: Optional[str] = None


class ApprovalInteraction(BaseModel):
    kind: Literal["meeting_approval"]
    action: Literal["approve", "edit"]


Interaction = Annotated[
    Union[
        MeetingTypeInteraction,
        AttendeeInteraction,
        ConflictInteraction,
        AgendaInteraction,
        ApprovalInteraction,
    ],
    Field(discriminator="kind"),
]

_INTERACTION_ADAPTER = TypeAdapter(Interaction)


def parse_interaction(payload: Dict[str, Any]):
    """
    Validate a raw interaction payload into its typed variant.

    Raises:
        pydantic.ValidationError: for an unknown kind or action, or malformed fields
    """
    return _INTERACTION_ADAPTER.validate_python(payload)

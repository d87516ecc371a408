"""Meeting workflow orchestrator.

A step-gated state machine driving a meeting from detected intent to a
created calendar event. Handlers decide the next step; the driver applies
it and keeps running handlers while no user input is needed.
"""

import re
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from meeting_scheduler.config import settings
from meeting_scheduler.context.compression import SIMPLE
from meeting_scheduler.context.conversation_context import ConversationContextEngine
from meeting_scheduler.integrations.google_calendar_client import AUTH, CalendarError, to_google_ts
from meeting_scheduler.memory.schemas import (
    AvailabilityResult,
    CalendarAccessStatus,
    InvalidTimeRangeError,
    MeetingDraft,
    MeetingDraftUpdate,
    Message,
    TimeSlot,
    ValidationResult,
    is_time_collection_complete,
    merge_meeting_draft,
)
from meeting_scheduler.orchestrator.agenda import build_fallback_agenda, validate_agenda_for_approval
from meeting_scheduler.orchestrator.steps import (
    AGENDA_APPROVAL,
    AGENDA_GENERATION,
    APPROVAL,
    ATTENDEE_COLLECTION,
    AVAILABILITY_CHECK,
    CALENDAR_ACCESS_VERIFICATION,
    COMPLETED,
    CONFLICT_RESOLUTION,
    CREATION,
    INTENT_DETECTION,
    MEETING_DETAILS_COLLECTION,
    MEETING_TYPE_SELECTION,
    STEP_ORDER,
    TIME_DATE_COLLECTION,
    VALIDATION,
    detect_meeting_type,
    is_known_step,
    step_index,
)
from meeting_scheduler.orchestrator.ui_blocks import (
    AgendaEditorPrompt,
    AttendeeManagementPrompt,
    ConflictResolutionPrompt,
    MeetingApprovalPrompt,
    MeetingTypeSelectionPrompt,
    StructuredPrompt,
)
from meeting_scheduler.router.ai_router import RoutingError
from meeting_scheduler.router.operations import MeetingExtraction
from meeting_scheduler.rules.business_rules import (
    BUSINESS_HOURS_END,
    BUSINESS_HOURS_START,
    INVALID_DATE_FORMAT,
    INVALID_TIME_RANGE,
    ONLINE_MEETING_NO_ATTENDEES,
    PHYSICAL_MEETING_NO_LOCATION,
    enforce_attendee_requirement,
    validate_attendees,
    validate_calendar_access,
    validate_meeting,
    validate_meeting_creation_requirements,
    validate_time_constraints,
    validate_workflow_sequence,
)
from meeting_scheduler.utils.calendar_utils import (
    find_conflicting_events,
    suggest_alternative_slots,
    summarize_event,
)
from meeting_scheduler.utils.date_utils import format_datetime_display, parse_iso_datetime, utc_now
from meeting_scheduler.utils.logging_utils import StructuredLogger
from meeting_scheduler.validation.attendee_validator import AttendeeValidator

DEFAULT_DURATION_MINUTES = 60
ALTERNATIVE_SEARCH_HOURS = 4

TYPE_LOCKED = "Meeting type cannot be changed after selection"
AGENDA_NOT_APPROVED = "Cannot approve agenda with validation errors"
CONFLICTS_KEPT = "Meeting overlaps with existing calendar events"
NO_CONFLICTS = "There are no calendar conflicts to resolve"
NOT_CREATED = "The meeting must be created in the calendar before the workflow can complete"
UNKNOWN_ALTERNATIVE = "Please choose one of the suggested times"

_EMAIL = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_APPROVE = re.compile(r"\b(approve|approved|confirm|yes|looks good|go ahead|create it|book it|proceed)\b", re.IGNORECASE)
_EDIT = re.compile(r"\b(edit|change|modify)\b", re.IGNORECASE)
_REGENERATE = re.compile(r"\b(regenerate|new agenda|another agenda|try again)\b", re.IGNORECASE)
_KEEP_TIME = re.compile(r"\b(keep|anyway|that's fine|it's fine)\b", re.IGNORECASE)
_RESCHEDULE = re.compile(r"\b(reschedule|different time|another time|move it)\b", re.IGNORECASE)
_OPTION = re.compile(r"\boption\s*#?(\d)\b", re.IGNORECASE)


class WorkflowState(BaseModel):
    """Snapshot of where a conversation is in the meeting workflow."""
    current_step: str = INTENT_DETECTION
    meeting_draft: Optional[MeetingDraft] = None
    validation_errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    is_complete: bool = False
    calendar_access_status: Optional[CalendarAccessStatus] = None
    availability_result: Optional[AvailabilityResult] = None
    time_collection_complete: bool = False
    attendee_collection_complete: bool = False
    conflicts_acknowledged: bool = False
    persisted_at: Optional[datetime] = None


class WorkflowResponse(BaseModel):
    """What the orchestrator tells the user after a message or transition."""
    message: str
    next_step: str
    requires_user_input: bool = True
    structured_prompt: Optional[StructuredPrompt] = None
    validation_errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    in_meeting_flow: bool = True


def _type_label(meeting_type: Optional[str]) -> str:
    return "in-person" if meeting_type == "physical" else "online"


def _dedupe(items: List[str]) -> List[str]:
    unique = []
    for item in items:
        if item not in unique:
            unique.append(item)
    return unique


class MeetingWorkflowOrchestrator:
    """Drives one conversation's meeting through the workflow steps."""

    def __init__(
        self,
        context_engine: ConversationContextEngine,
        ai_service,
        calendar=None,
        attendee_validator: Optional[AttendeeValidator] = None,
        intent_threshold: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.context = context_engine
        self.ai_service = ai_service
        self.calendar = calendar
        self.attendee_validator = attendee_validator or AttendeeValidator()
        self.intent_threshold = intent_threshold or settings.intent_confidence_threshold
        self.clock = clock
        self.state = WorkflowState()
        self.logger = StructuredLogger(__name__)
        self._handlers = {
            INTENT_DETECTION: self._handle_intent_detection,
            CALENDAR_ACCESS_VERIFICATION: self._handle_calendar_access,
            MEETING_TYPE_SELECTION: self._handle_meeting_type,
            TIME_DATE_COLLECTION: self._handle_time_collection,
            AVAILABILITY_CHECK: self._handle_availability,
            CONFLICT_RESOLUTION: self._handle_conflict_resolution,
            ATTENDEE_COLLECTION: self._handle_attendees,
            MEETING_DETAILS_COLLECTION: self._handle_details,
            VALIDATION: self._handle_validation,
            AGENDA_GENERATION: self._handle_agenda_generation,
            AGENDA_APPROVAL: self._handle_agenda_approval,
            APPROVAL: self._handle_approval,
            CREATION: self._handle_creation,
            COMPLETED: self._handle_completed,
        }

    # State helpers

    @property
    def current_step(self) -> str:
        return self.state.current_step

    def _draft(self) -> MeetingDraft:
        return self.context.draft or MeetingDraft()

    def _latest_user_text(self) -> str:
        for message in reversed(self.context.messages):
            if message.role == "user":
                return message.content
        return ""

    def _respond(self, message: str, next_step: Optional[str] = None, requires_user_input: bool = True,
                 **kwargs) -> WorkflowResponse:
        return WorkflowResponse(
            message=message,
            next_step=next_step or self.state.current_step,
            requires_user_input=requires_user_input,
            **kwargs
        )

    def _blocked(self, message: str, errors: List[str], warnings: Optional[List[str]] = None) -> WorkflowResponse:
        return self._respond(message, validation_errors=list(errors), warnings=list(warnings or []))

    def _set_step(self, step: str, correlation_id: Optional[str] = None) -> None:
        previous = self.state.current_step
        if previous == step:
            return
        self.state.current_step = step
        self.state.is_complete = step == COMPLETED
        self.logger.info(
            "Workflow step changed",
            correlation_id=correlation_id,
            conversation_id=self.context.conversation_id,
            from_step=previous,
            to_step=step,
        )

    def is_type_locked(self) -> bool:
        """The type is immutable once set and the flow has moved past type selection."""
        draft = self.context.draft
        if not draft or not draft.type:
            return False
        step = self.state.current_step
        return step == INTENT_DETECTION or step_index(step) > step_index(MEETING_TYPE_SELECTION)

    def _type_lock_response(self) -> WorkflowResponse:
        return self._blocked(
            f"Meeting type is already set to {self._draft().type} and cannot be changed",
            [TYPE_LOCKED],
        )

    def _prepare_update(
        self,
        data: Dict[str, Any]
    ) -> Tuple[Optional[MeetingDraftUpdate], Optional[MeetingDraft], List[str], Optional[WorkflowResponse]]:
        """
        Check user-supplied draft data without applying it.

        Returns:
            (update, prospective draft, changed fields, blocking response); the
            first three are None/empty when the data is rejected
        """
        if data.get("type") is not None and self.is_type_locked():
            return None, None, [], self._type_lock_response()

        try:
            update = MeetingDraftUpdate.model_validate(data)
        except ValidationError as e:
            errors = [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()]
            return None, None, [], self._blocked("Some of the meeting details are invalid.", errors)

        try:
            prospective, changed = merge_meeting_draft(self.context.draft, update)
        except InvalidTimeRangeError:
            return None, None, [], self._blocked("That time range doesn't work.", [INVALID_TIME_RANGE])
        return update, prospective, changed, None

    async def _apply_update(self, update: MeetingDraftUpdate) -> None:
        changed = await self.context.update_meeting_data(update)
        if "attendees" in changed or "type" in changed:
            self.state.attendee_collection_complete = False

    async def _merge_data(self, data: Optional[Dict[str, Any]]) -> Optional[WorkflowResponse]:
        """Merge user-supplied draft data. Returns a blocking response when rejected."""
        if not data:
            return None
        update, _, _, blocked = self._prepare_update(data)
        if blocked is not None:
            return blocked
        await self._apply_update(update)
        return None

    async def _finish(self, response: WorkflowResponse) -> WorkflowResponse:
        self.state.validation_errors = list(response.validation_errors)
        self.state.warnings = list(response.warnings)
        await self._persist()
        return response

    async def _persist(self) -> None:
        snapshot = self.get_workflow_state()
        snapshot.persisted_at = self.clock()
        await self.context.set_workflow_state(snapshot.model_dump(mode="json"))

    # Public operations

    async def process_message(self, message: Message, correlation_id: Optional[str] = None) -> WorkflowResponse:
        """
        Record a user message and move the workflow forward.

        Intent is only extracted while no meeting flow is active. A routing
        failure is surfaced as a validation error with the step unchanged.
        """
        await self.context.add_message(message, correlation_id)
        try:
            if self.state.current_step == INTENT_DETECTION or self.state.is_complete:
                response = await self._detect_intent(correlation_id)
            else:
                response = await self._apply_message_to_step(message.content, correlation_id)
                if response is None:
                    response = await self._run_steps(correlation_id)
        except RoutingError as e:
            self.logger.error(
                "Routing failed while processing message",
                correlation_id=correlation_id,
                conversation_id=self.context.conversation_id,
                step=self.state.current_step,
                error_code=e.code,
            )
            response = self._blocked(
                "I couldn't process that right now. Please try again in a moment.",
                [e.message],
            )
        return await self._finish(response)

    async def _detect_intent(self, correlation_id: Optional[str]) -> WorkflowResponse:
        extraction = await self.ai_service.extract_meeting_intent(
            self.context.messages, self.context.draft, correlation_id=correlation_id
        )
        if not extraction.is_meeting_intent(self.intent_threshold):
            return self._respond("How can I help you?", in_meeting_flow=False)
        if self.state.is_complete:
            await self.reset()
        return await self.start_meeting_workflow(extraction, correlation_id)

    async def start_meeting_workflow(
        self,
        extraction: MeetingExtraction,
        correlation_id: Optional[str] = None
    ) -> WorkflowResponse:
        """Seed the draft from extracted fields and auto-advance to the first interactive step."""
        fields = extraction.fields
        update: Dict[str, Any] = {}
        title = fields.suggested_title or fields.purpose
        if title:
            update["title"] = title
        if fields.purpose:
            update["purpose"] = await self.ai_service.enhance_purpose_wording(
                fields.purpose, correlation_id=correlation_id
            )
        if fields.participants:
            update["attendees"] = [{"email": email} for email in fields.participants]
        if fields.type:
            update["type"] = fields.type
        if fields.location:
            update["location"] = fields.location

        start = fields.start_time
        end = fields.end_time
        if start and not end and fields.duration:
            end = start + timedelta(minutes=fields.duration)
        if start:
            update["start_time"] = start
            update["end_time"] = end if end and end > start else None

        await self.context.update_meeting_data(update)
        self.logger.info(
            "Meeting workflow started",
            correlation_id=correlation_id,
            conversation_id=self.context.conversation_id,
            seeded_fields=sorted(update),
            confidence=extraction.confidence,
        )
        self._set_step(CALENDAR_ACCESS_VERIFICATION, correlation_id)
        response = await self._run_steps(correlation_id)
        response.message = f"I'll help you set up this meeting. {response.message}".strip()
        return response

    async def advance_to_step(
        self,
        step: str,
        data: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None
    ) -> WorkflowResponse:
        """
        Check the target's preconditions against the draft with ``data`` merged in, then move there.

        A rejected transition leaves both the current step and the draft unchanged.
        """
        if not is_known_step(step):
            return await self._finish(self._blocked(f"Unknown workflow step: {step}", [f"Unknown workflow step: {step}"]))

        update = None
        prospective = None
        attendees_complete = None
        if data:
            update, prospective, changed, blocked = self._prepare_update(data)
            if blocked is not None:
                return await self._finish(blocked)
            if "attendees" in changed or "type" in changed:
                attendees_complete = False

        check = self.validate_transition(step, draft=prospective, attendee_collection_complete=attendees_complete)
        if not check.is_valid:
            self.logger.warning(
                "Transition rejected",
                correlation_id=correlation_id,
                conversation_id=self.context.conversation_id,
                from_step=self.state.current_step,
                to_step=step,
                errors=check.errors,
            )
            return await self._finish(self._blocked(
                f"Cannot advance to {step}: {'; '.join(check.errors)}",
                check.errors,
                check.warnings,
            ))

        if update is not None:
            await self._apply_update(update)
        self._set_step(step, correlation_id)
        response = await self._run_steps(correlation_id)
        response.warnings = _dedupe(check.warnings + response.warnings)
        return await self._finish(response)

    async def process_step_transition(
        self,
        from_step: str,
        to_step: str,
        data: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None
    ) -> WorkflowResponse:
        """Transition that only applies while the workflow is at ``from_step``."""
        if from_step != self.state.current_step:
            error = f"Workflow is at {self.state.current_step}, not {from_step}"
            return await self._finish(self._blocked(error, [error]))
        return await self.advance_to_step(to_step, data, correlation_id)

    def validate_transition(
        self,
        to_step: str,
        draft: Optional[MeetingDraft] = None,
        attendee_collection_complete: Optional[bool] = None
    ) -> ValidationResult:
        """
        Preconditions for entering ``to_step``.

        ``draft`` and ``attendee_collection_complete`` default to the current
        state; pass them to check a transition against pending changes.
        """
        if not is_known_step(to_step):
            return ValidationResult.from_lists([f"Unknown workflow step: {to_step}"])

        draft = draft or self._draft()
        if attendee_collection_complete is None:
            attendee_collection_complete = self.state.attendee_collection_complete
        time_complete = is_time_collection_complete(draft)
        now = self.clock()
        errors: List[str] = []
        warnings: List[str] = []

        if to_step == TIME_DATE_COLLECTION:
            if not draft.type:
                errors.append("Meeting type must be selected before choosing a time")
        elif to_step == AVAILABILITY_CHECK:
            if not (draft.start_time and draft.end_time):
                errors.append("Start and end time are required before checking availability")
            else:
                result = validate_time_constraints(draft.start_time, draft.end_time, now=now)
                errors.extend(result.errors)
                warnings.extend(result.warnings)
        elif to_step == CONFLICT_RESOLUTION:
            availability = self.context.record.availability_result
            if availability is None or not availability.conflicts:
                errors.append(NO_CONFLICTS)
        elif to_step == ATTENDEE_COLLECTION:
            errors.extend(self.context.validate_workflow_step(ATTENDEE_COLLECTION, draft).errors)
            if not draft.type:
                errors.append("Meeting type must be selected before adding attendees")
        elif to_step == MEETING_DETAILS_COLLECTION:
            if draft.type == "online":
                if not attendee_collection_complete:
                    errors.append("Attendee collection must be completed before meeting details")
                if not enforce_attendee_requirement(draft.type, draft.attendees):
                    errors.append(ONLINE_MEETING_NO_ATTENDEES)
        elif to_step == VALIDATION:
            if not draft.title:
                errors.append("Meeting title is required")
            if not draft.type:
                errors.append("Meeting type is required")
            if not draft.start_time or not draft.end_time:
                errors.append("Meeting start and end time are required")
            if draft.type == "physical" and not draft.location:
                errors.append(PHYSICAL_MEETING_NO_LOCATION)
        elif to_step in (AGENDA_GENERATION, AGENDA_APPROVAL, APPROVAL):
            result = validate_meeting(draft, now=now)
            errors.extend(result.errors)
            warnings.extend(result.warnings)
        elif to_step == CREATION:
            status = self.state.calendar_access_status
            availability = self.context.record.availability_result
            result = validate_meeting_creation_requirements(draft, now=now)
            sequence = validate_workflow_sequence(
                calendar_access_verified=bool(status and status.has_access),
                time_collection_complete=time_complete,
                availability_checked=self.context.record.availability_checked,
                meeting_type=draft.type,
                attendee_collection_complete=attendee_collection_complete,
                has_conflicts=bool(availability and availability.conflicts),
                conflicts_resolved=self.state.conflicts_acknowledged,
            )
            errors.extend(result.errors + sequence.errors)
            warnings.extend(result.warnings + sequence.warnings)
            if status is not None:
                access = validate_calendar_access(status.has_access, status.needs_refresh, status.token_valid)
                errors.extend(access.errors)
        elif to_step == COMPLETED:
            if draft.status != "created" or not draft.event_id:
                errors.append(NOT_CREATED)

        return ValidationResult.from_lists(_dedupe(errors), _dedupe(warnings))

    async def set_meeting_type(self, meeting_type: str, location: Optional[str] = None,
                               correlation_id: Optional[str] = None) -> WorkflowResponse:
        data: Dict[str, Any] = {"type": meeting_type}
        if location:
            data["location"] = location
        return await self.advance_to_step(MEETING_TYPE_SELECTION, data, correlation_id)

    async def set_meeting_time(
        self,
        start_time,
        end_time=None,
        duration_minutes: Optional[int] = None,
        correlation_id: Optional[str] = None
    ) -> WorkflowResponse:
        """Set the time window; the end defaults to start plus the duration (or an hour)."""
        start = parse_iso_datetime(start_time)
        if start is None:
            return await self._finish(self._blocked("I couldn't read that date.", [INVALID_DATE_FORMAT]))
        end = parse_iso_datetime(end_time) if end_time else None
        if end_time and end is None:
            return await self._finish(self._blocked("I couldn't read that date.", [INVALID_DATE_FORMAT]))
        end = end or start + timedelta(minutes=duration_minutes or DEFAULT_DURATION_MINUTES)

        blocked = await self._merge_data({"start_time": start, "end_time": end})
        if blocked is not None:
            return await self._finish(blocked)

        if self.state.current_step in (TIME_DATE_COLLECTION, AVAILABILITY_CHECK, CONFLICT_RESOLUTION):
            self._set_step(TIME_DATE_COLLECTION, correlation_id)
            return await self._finish(await self._run_steps(correlation_id))
        return await self._finish(self._respond(f"Meeting time updated to {format_datetime_display(start)}."))

    async def resolve_conflict(self, action: str, start_time=None, end_time=None,
                               correlation_id: Optional[str] = None,
                               alternative: Optional[int] = None) -> WorkflowResponse:
        """
        Keep the conflicting time, take a suggested slot (``alternative`` is its
        zero-based index) or reschedule to ``start_time``.
        """
        if self.state.current_step != CONFLICT_RESOLUTION:
            error = "There is no scheduling conflict to resolve"
            return await self._finish(self._blocked(error, [error]))

        if action == "select_alternative":
            result = self.context.record.availability_result
            slots = result.suggested_alternatives if result else []
            if alternative is None or not 0 <= alternative < len(slots):
                return await self._finish(self._respond(
                    UNKNOWN_ALTERNATIVE,
                    validation_errors=[UNKNOWN_ALTERNATIVE],
                    structured_prompt=self._conflict_prompt(result) if result else None,
                ))
            slot = slots[alternative]
            return await self.set_meeting_time(slot.start_time, slot.end_time, correlation_id=correlation_id)

        if action == "keep_time":
            self.state.conflicts_acknowledged = True
            self._set_step(self._post_time_step(), correlation_id)
            response = await self._run_steps(correlation_id)
            response.warnings = _dedupe([CONFLICTS_KEPT] + response.warnings)
            return await self._finish(response)

        if start_time:
            return await self.set_meeting_time(start_time, end_time, correlation_id=correlation_id)
        await self.context.update_meeting_data({"start_time": None, "end_time": None})
        self._set_step(TIME_DATE_COLLECTION, correlation_id)
        return await self._finish(await self._run_steps(correlation_id))

    async def update_attendees(self, emails: List[str], correlation_id: Optional[str] = None) -> WorkflowResponse:
        """Replace the attendee list while collecting attendees."""
        if self.state.current_step != ATTENDEE_COLLECTION:
            return await self.advance_to_step(ATTENDEE_COLLECTION, {"attendees": emails}, correlation_id)
        blocked = await self._merge_data({"attendees": emails})
        if blocked is not None:
            return await self._finish(blocked)
        return await self._finish(await self._run_steps(correlation_id))

    async def approve_agenda(self, correlation_id: Optional[str] = None) -> WorkflowResponse:
        """Approve the agenda only when it has content and time allocations."""
        if self.state.current_step != AGENDA_APPROVAL:
            error = "The agenda can only be approved while reviewing it"
            return await self._finish(self._blocked(error, [error]))

        agenda = self._draft().agenda
        errors = validate_agenda_for_approval(agenda)
        if errors:
            return await self._finish(self._respond(
                AGENDA_NOT_APPROVED,
                validation_errors=errors,
                structured_prompt=AgendaEditorPrompt(agenda=agenda or "", errors=errors,
                                                     duration_minutes=self._draft().duration_minutes),
            ))

        check = self.validate_transition(APPROVAL)
        if not check.is_valid:
            return await self._finish(self._blocked(AGENDA_NOT_APPROVED, check.errors, check.warnings))

        await self.context.update_meeting_data({"status": "pending_approval"})
        self._set_step(APPROVAL, correlation_id)
        return await self._finish(await self._run_steps(correlation_id))

    async def update_agenda(self, agenda: str, correlation_id: Optional[str] = None) -> WorkflowResponse:
        if self.state.current_step != AGENDA_APPROVAL:
            error = "The agenda can only be edited while reviewing it"
            return await self._finish(self._blocked(error, [error]))
        await self.context.update_meeting_data({"agenda": agenda})
        return await self._finish(self._respond(
            "Agenda updated. Approve it when you're happy with it.",
            structured_prompt=AgendaEditorPrompt(agenda=agenda, duration_minutes=self._draft().duration_minutes),
        ))

    async def regenerate_agenda(self, correlation_id: Optional[str] = None) -> WorkflowResponse:
        if self.state.current_step != AGENDA_APPROVAL:
            error = "The agenda can only be regenerated while reviewing it"
            return await self._finish(self._blocked(error, [error]))
        self._set_step(AGENDA_GENERATION, correlation_id)
        return await self._finish(await self._run_steps(correlation_id))

    async def approve_meeting(self, correlation_id: Optional[str] = None) -> WorkflowResponse:
        if self.state.current_step != APPROVAL:
            error = "The meeting is not ready for approval"
            return await self._finish(self._blocked(error, [error]))
        return await self.create_meeting(correlation_id)

    async def edit_meeting(self, correlation_id: Optional[str] = None) -> WorkflowResponse:
        if self.state.current_step != APPROVAL:
            error = "The meeting is not ready for approval"
            return await self._finish(self._blocked(error, [error]))
        await self.context.update_meeting_data({"status": "draft"})
        self._set_step(MEETING_DETAILS_COLLECTION, correlation_id)
        return await self._finish(self._respond("What would you like to change?"))

    async def create_meeting(self, correlation_id: Optional[str] = None) -> WorkflowResponse:
        """
        Write the event to the calendar exactly once.

        A failure holds the workflow at approval with the error surfaced; the
        write is never retried because it may have partially succeeded.
        Access that failed earlier is checked again first, so a reconnected
        calendar can be used without restarting the workflow.
        """
        status = self.state.calendar_access_status
        if status is not None and not status.has_access:
            status = await self._verify_calendar_access()
            self.logger.info(
                "Calendar access re-checked before creation",
                correlation_id=correlation_id,
                conversation_id=self.context.conversation_id,
                has_access=status.has_access,
            )

        check = self.validate_transition(CREATION)
        if not check.is_valid:
            return await self._finish(self._respond(
                "The meeting can't be created yet.",
                next_step=self.state.current_step,
                validation_errors=check.errors,
                warnings=check.warnings,
            ))

        await self.context.update_meeting_data({"status": "approved"})
        self._set_step(CREATION, correlation_id)
        return await self._finish(await self._run_steps(correlation_id))

    async def reset(self) -> None:
        self.state = WorkflowState()
        await self.context.clear_meeting_data()
        await self._persist()

    def get_workflow_state(self) -> WorkflowState:
        record = self.context.record
        return self.state.model_copy(update={
            "meeting_draft": record.meeting_draft,
            "time_collection_complete": record.time_collection_complete,
            "availability_result": record.availability_result,
            "calendar_access_status": record.calendar_access_status or self.state.calendar_access_status,
        }, deep=True)

    def restore_state(self, state: WorkflowState) -> None:
        """Adopt a persisted snapshot. The draft itself lives in the conversation context."""
        self.state = state.model_copy(update={"meeting_draft": None}, deep=True)

    # Driver

    async def _execute_current_step(self, correlation_id: Optional[str]) -> WorkflowResponse:
        handler = self._handlers[self.state.current_step]
        return await handler(correlation_id)

    async def _run_steps(self, correlation_id: Optional[str] = None) -> WorkflowResponse:
        """
        Run the current handler, then keep advancing while no input is needed.

        Stops on arrival at meeting type selection so the user always sees the
        type choice. Forward moves chosen by a handler go through the same
        preconditions as explicit transitions; moving back to correct an
        earlier step is always allowed. Bounded by the number of steps.
        """
        response = await self._execute_current_step(correlation_id)
        warnings = list(response.warnings)
        messages = [response.message]

        for _ in range(len(STEP_ORDER)):
            target = response.next_step
            if target == self.state.current_step:
                break
            if step_index(target) > step_index(self.state.current_step):
                check = self.validate_transition(target)
                if not check.is_valid:
                    self.logger.warning(
                        "Automatic transition rejected",
                        correlation_id=correlation_id,
                        conversation_id=self.context.conversation_id,
                        from_step=self.state.current_step,
                        to_step=target,
                        errors=check.errors,
                    )
                    warnings.extend(check.warnings)
                    response = self._blocked(
                        f"Cannot advance to {target}: {'; '.join(check.errors)}",
                        _dedupe(response.validation_errors + check.errors),
                    )
                    messages.append(response.message)
                    break
            self._set_step(target, correlation_id)
            if response.requires_user_input or target in (MEETING_TYPE_SELECTION, COMPLETED):
                break
            response = await self._execute_current_step(correlation_id)
            warnings.extend(response.warnings)
            messages.append(response.message)

        if self.state.current_step == MEETING_TYPE_SELECTION and response.structured_prompt is None:
            response = self._meeting_type_prompt()
            messages.append(response.message)

        response.message = " ".join(message for message in messages if message)
        response.next_step = self.state.current_step
        response.warnings = _dedupe(warnings)
        return response

    async def _apply_message_to_step(self, text: str, correlation_id: Optional[str]) -> Optional[WorkflowResponse]:
        """Interpret a free-text reply at the current step. None means run the step handler."""
        step = self.state.current_step
        draft = self._draft()

        if step == MEETING_TYPE_SELECTION:
            detected = detect_meeting_type(text)
            if detected and detected != draft.type:
                await self.context.update_meeting_data({"type": detected})
        elif step == TIME_DATE_COLLECTION:
            extracted = await self.ai_service.extract_time(text, correlation_id=correlation_id)
            if extracted.start_time and extracted.confidence > self.intent_threshold:
                return await self.set_meeting_time(
                    extracted.start_time, extracted.end_time, extracted.duration, correlation_id
                )
        elif step == CONFLICT_RESOLUTION:
            option = _OPTION.search(text)
            if option:
                return await self.resolve_conflict(
                    "select_alternative", correlation_id=correlation_id, alternative=int(option.group(1)) - 1
                )
            if _RESCHEDULE.search(text):
                return await self.resolve_conflict("reschedule", correlation_id=correlation_id)
            if _KEEP_TIME.search(text) or _APPROVE.search(text):
                return await self.resolve_conflict("keep_time", correlation_id=correlation_id)
        elif step == ATTENDEE_COLLECTION:
            emails = _EMAIL.findall(text)
            if emails:
                return await self.update_attendees(draft.attendee_emails() + emails, correlation_id)
        elif step == MEETING_DETAILS_COLLECTION:
            answer = text.strip()
            if answer and not draft.title:
                await self.context.update_meeting_data({"title": answer[:100]})
            elif answer and draft.type == "physical" and not draft.location:
                await self.context.update_meeting_data({"location": answer[:200]})
        elif step == AGENDA_APPROVAL:
            if _REGENERATE.search(text):
                return await self.regenerate_agenda(correlation_id)
            if _APPROVE.search(text):
                return await self.approve_agenda(correlation_id)
        elif step == APPROVAL:
            if _EDIT.search(text):
                return await self.edit_meeting(correlation_id)
            if _APPROVE.search(text):
                return await self.approve_meeting(correlation_id)
        return None

    def _post_time_step(self) -> str:
        return ATTENDEE_COLLECTION if self._draft().type == "online" else MEETING_DETAILS_COLLECTION

    # Step handlers

    async def _handle_intent_detection(self, correlation_id):
        return self._respond("Tell me about the meeting you'd like to schedule.")

    async def _verify_calendar_access(self) -> CalendarAccessStatus:
        if self.calendar is None:
            status = CalendarAccessStatus(has_access=False, error="Calendar is not connected")
        else:
            try:
                status = await self.calendar.verify_access()
            except CalendarError as e:
                status = CalendarAccessStatus(has_access=False, needs_refresh=e.code == AUTH, error=e.message)

        self.state.calendar_access_status = status
        await self.context.set_calendar_access_status(status)
        return status

    async def _handle_calendar_access(self, correlation_id):
        status = await self._verify_calendar_access()
        if status.has_access:
            return self._respond("", next_step=MEETING_TYPE_SELECTION, requires_user_input=False)

        self.logger.warning(
            "Calendar access not verified",
            correlation_id=correlation_id,
            conversation_id=self.context.conversation_id,
            error=status.error,
        )
        return self._respond(
            "",
            next_step=MEETING_TYPE_SELECTION,
            requires_user_input=False,
            warnings=[f"Calendar access could not be verified: {status.error or 'unknown error'}"],
        )

    def _meeting_type_prompt(self) -> WorkflowResponse:
        draft = self._draft()
        selected = draft.type or detect_meeting_type(self._latest_user_text())
        question = "Is this an online meeting or an in-person meeting?"
        if selected:
            question = f"It sounds like an {_type_label(selected)} meeting. Can you confirm the meeting type?"
        return self._respond(
            question,
            next_step=MEETING_TYPE_SELECTION,
            structured_prompt=MeetingTypeSelectionPrompt(question=question, selected_type=selected),
        )

    async def _handle_meeting_type(self, correlation_id):
        draft = self._draft()
        if draft.type:
            return self._respond(
                f"Great, an {_type_label(draft.type)} meeting.",
                next_step=TIME_DATE_COLLECTION,
                requires_user_input=False,
            )
        return self._meeting_type_prompt()

    async def _handle_time_collection(self, correlation_id):
        draft = self._draft()
        if not draft.start_time:
            return self._respond("When should the meeting take place?")

        if not draft.end_time:
            await self.context.update_meeting_data({
                "end_time": draft.start_time + timedelta(minutes=DEFAULT_DURATION_MINUTES)
            })
            draft = self._draft()

        check = validate_time_constraints(draft.start_time, draft.end_time, now=self.clock())
        if not check.is_valid:
            return self._respond(
                "That time doesn't work. Please choose another time.",
                validation_errors=check.errors,
                warnings=check.warnings,
            )
        return self._respond(
            f"Scheduled for {format_datetime_display(draft.start_time)}.",
            next_step=AVAILABILITY_CHECK,
            requires_user_input=False,
            warnings=check.warnings,
        )

    async def _handle_availability(self, correlation_id):
        draft = self._draft()
        next_step = self._post_time_step()
        if self.calendar is None:
            return self._respond("", next_step=next_step, requires_user_input=False,
                                 warnings=["Calendar availability could not be checked"])
        # One read covers the requested window and the range searched for alternatives
        search = timedelta(hours=ALTERNATIVE_SEARCH_HOURS)
        try:
            events = await self.calendar.list_events(draft.start_time - search, draft.end_time + search)
        except CalendarError as e:
            self.logger.warning(
                "Availability check failed",
                correlation_id=correlation_id,
                conversation_id=self.context.conversation_id,
                error=e.message,
            )
            return self._respond("", next_step=next_step, requires_user_input=False,
                                 warnings=["Calendar availability could not be checked"])

        conflicts = [summarize_event(event) for event in find_conflicting_events(events, draft.start_time, draft.end_time)]
        alternatives = []
        if conflicts:
            alternatives = suggest_alternative_slots(
                events,
                draft.start_time,
                draft.duration_minutes or DEFAULT_DURATION_MINUTES,
                now=self.clock(),
                search_hours=ALTERNATIVE_SEARCH_HOURS,
                business_hours=(BUSINESS_HOURS_START, BUSINESS_HOURS_END),
            )
        result = AvailabilityResult(
            is_available=not conflicts,
            start_time=draft.start_time,
            end_time=draft.end_time,
            conflicts=conflicts,
            suggested_alternatives=[TimeSlot(**slot) for slot in alternatives],
            checked_at=self.clock(),
        )
        await self.context.store_availability_result(result)
        self.state.availability_result = result
        self.state.conflicts_acknowledged = False

        if conflicts:
            return self._respond(
                self._conflict_message(result, f"That time overlaps with {len(conflicts)} existing event(s)."),
                next_step=CONFLICT_RESOLUTION,
                structured_prompt=self._conflict_prompt(result),
            )
        return self._respond("You're free at that time.", next_step=next_step, requires_user_input=False)

    def _conflict_message(self, result: AvailabilityResult, lead: str) -> str:
        if not result.suggested_alternatives:
            return f"{lead} Keep it or pick another time?"
        options = "; ".join(
            f"option {index}: {format_datetime_display(slot.start_time)}"
            for index, slot in enumerate(result.suggested_alternatives, start=1)
        )
        return f"{lead} Free alternatives: {options}. Pick one, keep the time or suggest another."

    def _conflict_prompt(self, result: AvailabilityResult) -> ConflictResolutionPrompt:
        return ConflictResolutionPrompt(
            requested_start=result.start_time.isoformat(),
            requested_end=result.end_time.isoformat(),
            conflicts=result.conflicts,
            alternatives=[slot.model_dump(mode="json") for slot in result.suggested_alternatives],
        )

    async def _handle_conflict_resolution(self, correlation_id):
        result = self.context.record.availability_result
        if result is None or result.is_available:
            return self._respond("", next_step=self._post_time_step(), requires_user_input=False)
        return self._respond(
            self._conflict_message(result, "That time still overlaps with existing events."),
            structured_prompt=self._conflict_prompt(result),
        )

    async def _handle_attendees(self, correlation_id):
        draft = self._draft()
        if not draft.attendees:
            if draft.type == "online":
                return self._respond(
                    "Who should attend? Online meetings need at least one attendee.",
                    structured_prompt=AttendeeManagementPrompt(meeting_type=draft.type, min_attendees=1),
                )
            self.state.attendee_collection_complete = True
            return self._respond("", next_step=MEETING_DETAILS_COLLECTION, requires_user_input=False)

        results = await self.attendee_validator.validate_batch(draft.attendee_emails(), correlation_id)
        by_email = {result.email.lower(): result for result in results}

        attendees = []
        seen = set()
        for attendee in draft.attendees:
            key = attendee.email.strip().lower()
            if key in seen:
                continue
            seen.add(key)
            result = by_email.get(key)
            if result is None:
                attendees.append(attendee)
                continue
            attendees.append(attendee.model_copy(update={
                "is_validated": result.is_valid,
                "trusted": result.trusted,
                "first_name": attendee.first_name or result.first_name,
                "last_name": attendee.last_name or result.last_name,
            }))
        await self.context.update_meeting_data({"attendees": [a.model_dump() for a in attendees]})

        invalid = [result.email for result in results if not result.is_valid]
        rules = validate_attendees(attendees)
        warnings = list(rules.warnings)
        if any(result.is_valid and not result.trusted for result in results):
            warnings.append("Some attendees could only be checked for a valid email format")

        if invalid or not rules.is_valid:
            errors = [f"Invalid attendee email: {email}" for email in invalid] + rules.errors
            return self._respond(
                "Some attendees need attention.",
                validation_errors=_dedupe(errors),
                warnings=warnings,
                structured_prompt=AttendeeManagementPrompt(
                    attendees=attendees,
                    meeting_type=draft.type,
                    min_attendees=1 if draft.type == "online" else 0,
                    invalid_emails=invalid,
                ),
            )

        self.state.attendee_collection_complete = True
        return self._respond(
            f"Added {len(attendees)} attendee(s).",
            next_step=MEETING_DETAILS_COLLECTION,
            requires_user_input=False,
            warnings=warnings,
        )

    async def _handle_details(self, correlation_id):
        draft = self._draft()
        if not draft.title:
            titles = await self.ai_service.generate_meeting_titles(
                draft.purpose or "", draft.attendee_emails(), correlation_id=correlation_id
            )
            suggestions = ", ".join(titles.get("suggestions", []))
            return self._respond(f"What should we call the meeting? Some ideas: {suggestions}.")
        if draft.type == "physical" and not draft.location:
            return self._respond("Where will the meeting take place?")
        return self._respond("", next_step=VALIDATION, requires_user_input=False)

    def _step_for_errors(self, errors: List[str]) -> str:
        text = " ".join(errors).lower()
        if "type is required" in text or "type must be" in text:
            return MEETING_TYPE_SELECTION
        if "time" in text or "duration" in text or "book" in text or "scheduled" in text:
            return TIME_DATE_COLLECTION
        if "attendee" in text or "email" in text:
            return ATTENDEE_COLLECTION
        return MEETING_DETAILS_COLLECTION

    async def _handle_validation(self, correlation_id):
        result = validate_meeting_creation_requirements(self._draft(), now=self.clock())
        if not result.is_valid:
            return self._respond(
                "Some details need attention before we continue.",
                next_step=self._step_for_errors(result.errors),
                validation_errors=result.errors,
                warnings=result.warnings,
            )
        return self._respond("", next_step=AGENDA_GENERATION, requires_user_input=False, warnings=result.warnings)

    async def _generate_agenda(self, correlation_id) -> Tuple[str, bool]:
        draft = self._draft()
        try:
            context = await self.context.get_compressed_context(SIMPLE, correlation_id=correlation_id)
            agenda = await self.ai_service.generate_meeting_agenda(
                draft.title,
                purpose=draft.purpose,
                participants=draft.attendee_emails(),
                duration=draft.duration_minutes or DEFAULT_DURATION_MINUTES,
                context=context.compressed_context,
                correlation_id=correlation_id,
            )
        except RoutingError as e:
            self.logger.warning(
                "Agenda generation failed, using template",
                correlation_id=correlation_id,
                conversation_id=self.context.conversation_id,
                error_code=e.code,
            )
            agenda = ""
        if agenda and agenda.strip():
            return agenda.strip(), False
        return build_fallback_agenda(draft.title), True

    async def _handle_agenda_generation(self, correlation_id):
        agenda, is_fallback = await self._generate_agenda(correlation_id)
        await self.context.update_meeting_data({"agenda": agenda})
        warnings = ["The agenda was created from a template"] if is_fallback else []
        return self._respond(
            "Here's a draft agenda. Edit it, regenerate it or approve it.",
            next_step=AGENDA_APPROVAL,
            structured_prompt=AgendaEditorPrompt(
                agenda=agenda,
                duration_minutes=self._draft().duration_minutes,
                is_fallback=is_fallback,
            ),
            warnings=warnings,
        )

    async def _handle_agenda_approval(self, correlation_id):
        draft = self._draft()
        return self._respond(
            "Review the agenda and approve it when it's ready.",
            structured_prompt=AgendaEditorPrompt(agenda=draft.agenda or "", duration_minutes=draft.duration_minutes),
        )

    def _meeting_summary(self, draft: MeetingDraft) -> str:
        lines = [
            f"Title: {draft.title}",
            f"Type: {_type_label(draft.type)}",
            f"When: {format_datetime_display(draft.start_time)} ({draft.duration_minutes or 0} min)",
        ]
        if draft.location:
            lines.append(f"Where: {draft.location}")
        if draft.attendees:
            lines.append(f"Attendees: {', '.join(a.display_name for a in draft.attendees)}")
        return "\n".join(lines)

    async def _handle_approval(self, correlation_id):
        draft = self._draft()
        return self._respond(
            "Please review the meeting and approve it to create the calendar event.",
            structured_prompt=MeetingApprovalPrompt(
                summary=self._meeting_summary(draft),
                meeting=draft.model_dump(mode="json"),
            ),
        )

    def build_event_payload(self, draft: MeetingDraft) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "summary": draft.title,
            "description": draft.agenda or draft.purpose or "",
            "start": {"dateTime": to_google_ts(draft.start_time)},
            "end": {"dateTime": to_google_ts(draft.end_time)},
            "attendees": [
                {"email": a.email, "displayName": a.display_name, "optional": not a.is_required}
                for a in draft.attendees
            ],
        }
        if draft.location:
            payload["location"] = draft.location
        if draft.type == "online":
            payload["create_meet_link"] = True
        return payload

    async def _handle_creation(self, correlation_id):
        draft = self._draft()
        try:
            if self.calendar is None:
                raise CalendarError("Calendar is not connected", AUTH)
            created = await self.calendar.create_event(self.build_event_payload(draft))
        except CalendarError as e:
            self.logger.error(
                "Meeting creation failed",
                correlation_id=correlation_id,
                conversation_id=self.context.conversation_id,
                error_code=e.code,
            )
            await self.context.update_meeting_data({"status": "pending_approval"})
            message = "I couldn't create the meeting."
            if e.code == AUTH:
                status = CalendarAccessStatus(has_access=False, needs_refresh=True, error=e.message)
                self.state.calendar_access_status = status
                await self.context.set_calendar_access_status(status)
                message += " Please reconnect your calendar, then approve again."
            else:
                message += " Please check your calendar and try approving again."
            return self._respond(message, next_step=APPROVAL, validation_errors=[e.message])

        await self.context.update_meeting_data({
            "status": "created",
            "event_id": created.get("id"),
            "meeting_link": created.get("meeting_link"),
        })
        self.logger.info(
            "Meeting created",
            correlation_id=correlation_id,
            conversation_id=self.context.conversation_id,
            event_id=created.get("id"),
        )
        link = f" Join link: {created['meeting_link']}" if created.get("meeting_link") else ""
        return self._respond(
            f"Your meeting \"{draft.title}\" has been created.{link}",
            next_step=COMPLETED,
            requires_user_input=False,
        )

    async def _handle_completed(self, correlation_id):
        return self._respond("This meeting has been created. Let me know if you'd like to schedule another.",
                             requires_user_input=False)

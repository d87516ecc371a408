"""Chat-facing facade over the context engine and the workflow orchestrator.

Owns the per-conversation session cache and serializes every mutation of a
conversation so that two requests for the same id never interleave.
"""

import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from meeting_scheduler.context.compression import SIMPLE
from meeting_scheduler.context.conversation_context import ConversationContextEngine
from meeting_scheduler.integration.cache import ConversationCache, ConversationSession, KeyedLock
from meeting_scheduler.memory.schemas import MeetingDraft, Message, MessageHistoryPage
from meeting_scheduler.memory.store import ConversationStore
from meeting_scheduler.orchestrator.steps import MEETING_DETAILS_COLLECTION, is_known_step, progress_percent
from meeting_scheduler.orchestrator.ui_blocks import (
    AgendaInteraction,
    ApprovalInteraction,
    AttendeeInteraction,
    ConflictInteraction,
    MeetingTypeInteraction,
    StructuredPrompt,
    parse_interaction,
)
from meeting_scheduler.orchestrator.workflow import (
    MeetingWorkflowOrchestrator,
    WorkflowResponse,
    WorkflowState,
)
from meeting_scheduler.utils.date_utils import parse_iso_datetime, utc_now
from meeting_scheduler.utils.logging_utils import StructuredLogger, generate_correlation_id, log_pipeline_step
from meeting_scheduler.validation.attendee_validator import AttendeeValidator

STALE_STATE_AGE = timedelta(hours=24)
STALE_STATE_WARNING = "Restored meeting workflow is more than 24 hours old"


class ConversationNotFoundError(Exception):
    """No stored context exists for the conversation id."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class WorkflowSummary(BaseModel):
    current_step: str
    requires_input: bool
    is_complete: bool
    draft: Optional[MeetingDraft] = None
    progress: int = 0


class ValidationSummary(BaseModel):
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ChatEnvelope(BaseModel):
    """Response returned for every chat message or UI interaction."""
    message: str
    structured_prompt: Optional[StructuredPrompt] = None
    conversation_id: str
    workflow: WorkflowSummary
    validation: ValidationSummary
    context_stats: Dict[str, Any] = Field(default_factory=dict)


def restore_workflow_state(
    data: Optional[Dict[str, Any]],
    now: Optional[datetime] = None
) -> Tuple[Optional[WorkflowState], bool]:
    """
    Rebuild a persisted workflow state after structural checks.

    A state is accepted only with a known step, a meeting draft and a boolean
    ``is_complete``. States persisted more than 24 hours ago are still
    restored, flagged as stale.

    Returns:
        (state or None when rejected, stale flag)
    """
    if not isinstance(data, dict):
        return None, False
    if not is_known_step(data.get("current_step")):
        return None, False
    if not isinstance(data.get("meeting_draft"), dict):
        return None, False
    if not isinstance(data.get("is_complete"), bool):
        return None, False

    try:
        state = WorkflowState.model_validate(data)
    except ValidationError:
        return None, False

    persisted_at = parse_iso_datetime(data.get("persisted_at"))
    now = now or utc_now()
    stale = persisted_at is not None and now - persisted_at > STALE_STATE_AGE
    return state, stale


class WorkflowChatIntegration:
    """Entry point for chat messages, UI interactions and explicit step transitions."""

    def __init__(
        self,
        store: ConversationStore,
        ai_service,
        calendar=None,
        attendee_validator: Optional[AttendeeValidator] = None,
        cache: Optional[ConversationCache] = None,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.ai_service = ai_service
        self.calendar = calendar
        self.attendee_validator = attendee_validator or AttendeeValidator(ai_service=ai_service)
        self.cache = cache or ConversationCache()
        self.locks = locks or KeyedLock()
        self.clock = clock
        self._stale: Dict[str, bool] = {}
        self.logger = StructuredLogger(__name__)

    # Sessions

    async def _session(self, user_id: str, conversation_id: str) -> ConversationSession:
        session = self.cache.get(conversation_id)
        if session is not None:
            return session

        context = ConversationContextEngine(conversation_id, user_id, self.store, ai_service=self.ai_service)
        await context.load_context()
        orchestrator = MeetingWorkflowOrchestrator(
            context,
            self.ai_service,
            calendar=self.calendar,
            attendee_validator=self.attendee_validator,
            clock=self.clock,
        )

        persisted = context.record.workflow_state
        if persisted is not None:
            state, stale = restore_workflow_state(persisted, self.clock())
            if state is None:
                self.logger.warning(
                    "Discarding invalid persisted workflow state",
                    conversation_id=conversation_id,
                )
            else:
                orchestrator.restore_state(state)
                self._stale[conversation_id] = stale
                if stale:
                    self.logger.warning("Restored stale workflow state", conversation_id=conversation_id)

        session = ConversationSession(context, orchestrator)
        self.cache.put(conversation_id, session)
        return session

    async def _existing_session(self, user_id: str, conversation_id: str) -> ConversationSession:
        if self.cache.get(conversation_id) is None and await self.store.get_context(conversation_id) is None:
            raise ConversationNotFoundError(conversation_id)
        return await self._session(user_id, conversation_id)

    def _summary(self, session: ConversationSession, requires_input: bool) -> WorkflowSummary:
        state = session.orchestrator.state
        return WorkflowSummary(
            current_step=state.current_step,
            requires_input=requires_input,
            is_complete=state.is_complete,
            draft=session.context.draft,
            progress=progress_percent(state.current_step),
        )

    def _envelope(self, conversation_id: str, session: ConversationSession, response: WorkflowResponse) -> ChatEnvelope:
        warnings = list(response.warnings)
        if self._stale.pop(conversation_id, False):
            warnings.append(STALE_STATE_WARNING)
        return ChatEnvelope(
            message=response.message,
            structured_prompt=response.structured_prompt,
            conversation_id=conversation_id,
            workflow=self._summary(session, response.requires_user_input),
            validation=ValidationSummary(errors=list(response.validation_errors), warnings=warnings),
            context_stats=session.context.get_stats(),
        )

    async def _record_reply(self, session: ConversationSession, text: str, correlation_id: str) -> None:
        if text:
            await session.context.add_message(Message(role="assistant", content=text), correlation_id)

    # Chat

    @log_pipeline_step
    async def process_message(
        self,
        user_id: str,
        text: str,
        conversation_id: Optional[str] = None,
        correlation_id: Optional[str] = None
    ) -> ChatEnvelope:
        """
        Handle one user chat message.

        Scheduling turns are answered by the orchestrator. Anything else gets
        a conversational reply.
        """
        conversation_id = conversation_id or str(uuid.uuid4())
        correlation_id = correlation_id or generate_correlation_id()

        async with self.locks.hold(conversation_id):
            session = await self._session(user_id, conversation_id)
            response = await session.orchestrator.process_message(
                Message(role="user", content=text), correlation_id
            )
            if not response.in_meeting_flow:
                compressed = await session.context.get_compressed_context(SIMPLE, correlation_id=correlation_id)
                response.message = await self.ai_service.generate_chat_response(
                    text, context=compressed.compressed_context, correlation_id=correlation_id
                )
                response.requires_user_input = True

            await self._record_reply(session, response.message, correlation_id)
            self.logger.info(
                "Chat message processed",
                correlation_id=correlation_id,
                conversation_id=conversation_id,
                step=session.orchestrator.current_step,
                in_meeting_flow=response.in_meeting_flow,
            )
            return self._envelope(conversation_id, session, response)

    @log_pipeline_step
    async def handle_structured_interaction(
        self,
        user_id: str,
        payload: Dict[str, Any],
        conversation_id: Optional[str] = None,
        correlation_id: Optional[str] = None
    ) -> ChatEnvelope:
        """Apply a UI interaction (button press, form submit) to the workflow."""
        conversation_id = conversation_id or str(uuid.uuid4())
        correlation_id = correlation_id or generate_correlation_id()

        async with self.locks.hold(conversation_id):
            session = await self._session(user_id, conversation_id)
            orchestrator = session.orchestrator
            try:
                interaction = parse_interaction(payload)
            except ValidationError as e:
                errors = [error["msg"] for error in e.errors()]
                self.logger.warning(
                    "Rejected structured interaction",
                    correlation_id=correlation_id,
                    conversation_id=conversation_id,
                    kind=payload.get("kind") if isinstance(payload, dict) else None,
                    errors=errors,
                )
                response = WorkflowResponse(
                    message="That action isn't supported here.",
                    next_step=orchestrator.current_step,
                    validation_errors=errors,
                )
                return self._envelope(conversation_id, session, response)

            response = await self._dispatch(orchestrator, interaction, correlation_id)
            await self._record_reply(session, response.message, correlation_id)
            return self._envelope(conversation_id, session, response)

    async def _dispatch(self, orchestrator: MeetingWorkflowOrchestrator, interaction, correlation_id: str) -> WorkflowResponse:
        if isinstance(interaction, MeetingTypeInteraction):
            return await orchestrator.set_meeting_type(interaction.type, interaction.location, correlation_id)

        if isinstance(interaction, AttendeeInteraction):
            if interaction.action == "update_attendees":
                return await orchestrator.update_attendees(interaction.attendees, correlation_id)
            if orchestrator.current_step == MEETING_DETAILS_COLLECTION:
                return await orchestrator.advance_to_step(MEETING_DETAILS_COLLECTION, correlation_id=correlation_id)
            draft = orchestrator.context.draft
            emails = draft.attendee_emails() if draft else []
            return await orchestrator.update_attendees(emails, correlation_id)

        if isinstance(interaction, ConflictInteraction):
            return await orchestrator.resolve_conflict(
                interaction.action, interaction.start_time, interaction.end_time, correlation_id,
                alternative=interaction.alternative,
            )

        if isinstance(interaction, AgendaInteraction):
            if interaction.action == "update":
                if not interaction.agenda:
                    return WorkflowResponse(
                        message="Please provide the updated agenda.",
                        next_step=orchestrator.current_step,
                        validation_errors=["Agenda text is required for an update"],
                    )
                return await orchestrator.update_agenda(interaction.agenda, correlation_id)
            if interaction.action == "regenerate":
                return await orchestrator.regenerate_agenda(correlation_id)
            return await orchestrator.approve_agenda(correlation_id)

        if isinstance(interaction, ApprovalInteraction):
            if interaction.action == "edit":
                return await orchestrator.edit_meeting(correlation_id)
            return await orchestrator.approve_meeting(correlation_id)

        raise TypeError(f"Unhandled interaction: {type(interaction).__name__}")

    # Workflow control

    async def advance_step(
        self,
        user_id: str,
        step: str,
        data: Optional[Dict[str, Any]] = None,
        conversation_id: Optional[str] = None,
        correlation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Explicit step transition. ``success`` is False whenever validation errors were returned."""
        conversation_id = conversation_id or str(uuid.uuid4())
        correlation_id = correlation_id or generate_correlation_id()

        async with self.locks.hold(conversation_id):
            session = await self._session(user_id, conversation_id)
            response = await session.orchestrator.advance_to_step(step, data, correlation_id)
            envelope = self._envelope(conversation_id, session, response)
            return {
                "success": not response.validation_errors,
                "message": response.message,
                "conversation_id": conversation_id,
                "structured_prompt": envelope.structured_prompt,
                "workflow": envelope.workflow,
                "validation": envelope.validation,
            }

    async def get_workflow_state(self, user_id: str, conversation_id: str) -> Dict[str, Any]:
        """
        Raises:
            ConversationNotFoundError: if nothing is stored for the conversation
        """
        async with self.locks.hold(conversation_id):
            session = await self._existing_session(user_id, conversation_id)
            state = session.orchestrator.get_workflow_state()
            return {
                "conversation_id": conversation_id,
                "workflow": self._summary(session, True),
                "state": state,
                "context": session.context.get_workflow_state(),
                "metrics": session.context.get_performance_metrics(),
                "recommendations": session.context.get_optimization_recommendations(),
                "stale": self._stale.get(conversation_id, False),
            }

    async def reset_workflow(self, user_id: str, conversation_id: str, correlation_id: Optional[str] = None) -> Dict[str, Any]:
        """Drop the meeting draft and return to intent detection. Message history is kept."""
        async with self.locks.hold(conversation_id):
            session = await self._existing_session(user_id, conversation_id)
            await session.orchestrator.reset()
            self._stale.pop(conversation_id, None)
            self.logger.info("Workflow reset", correlation_id=correlation_id, conversation_id=conversation_id)
            return {
                "success": True,
                "conversation_id": conversation_id,
                "workflow": self._summary(session, True),
            }

    async def get_conversation_history(self, conversation_id: str, offset: int = 0, limit: int = 20) -> MessageHistoryPage:
        page = await self.store.get_message_history(conversation_id, offset, limit)
        if page.total_count == 0 and await self.store.get_context(conversation_id) is None:
            raise ConversationNotFoundError(conversation_id)
        return page

    def get_router_status(self) -> Dict[str, Any]:
        return {
            "status": self.ai_service.get_service_status(),
            "usage": self.ai_service.get_usage_stats(),
            "attendee_cache": self.attendee_validator.get_cache_stats(),
            "conversation_cache": self.cache.stats(),
        }

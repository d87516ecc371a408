"""Conversation context engine.

Owns the live message window, mode, and meeting draft of one conversation.
The live window is bounded by compression; the full history always remains
in storage.
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel

from meeting_scheduler.config import settings
from meeting_scheduler.context.compression import (
    AI_SUMMARIZATION,
    HYBRID,
    MIN_MESSAGES_FOR_COMPRESSION,
    SIMPLE,
    STRATEGIES,
    build_simple_context,
    build_summary_context,
    count_message_tokens,
    estimate_tokens,
    select_hybrid_strategy,
    select_retained_messages,
)
from meeting_scheduler.context.mode_classifier import KeywordModeClassifier, ModeClassifier
from meeting_scheduler.llm.errors import BackendError
from meeting_scheduler.memory.schemas import (
    AvailabilityResult,
    CalendarAccessStatus,
    ConversationContextRecord,
    MeetingDraftUpdate,
    Message,
    MessageHistoryPage,
    ValidationResult,
    is_time_collection_complete,
    merge_meeting_draft,
)
from meeting_scheduler.memory.store import ConversationStore
from meeting_scheduler.router.ai_router import RoutingError
from meeting_scheduler.utils.date_utils import utc_now
from meeting_scheduler.utils.logging_utils import StructuredLogger

LOAD_MESSAGE_LIMIT = 20
SUMMARY_KEEP_RECENT = 3

TIME_GATED_STEPS = {
    "attendee_collection": "Time collection must be completed before attendee collection",
    "availability_check": "Time collection must be completed before availability check",
    "creation": "Time collection must be completed before meeting creation",
}


class CompressedContext(BaseModel):
    """Compact rendering of a conversation plus its size metrics."""
    compressed_context: str
    token_count: int
    original_token_count: int
    compression_ratio: float
    compression_strategy: str
    tokens_saved: int


class ConversationContextEngine:
    """Bounded, persisted view of a single conversation."""

    def __init__(
        self,
        conversation_id: str,
        user_id: str,
        store: ConversationStore,
        ai_service=None,
        classifier: Optional[ModeClassifier] = None,
        max_context_length: Optional[int] = None,
        compression_threshold: Optional[float] = None
    ):
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.store = store
        self.ai_service = ai_service
        self.classifier = classifier or KeywordModeClassifier()
        self.max_context_length = max_context_length or settings.context_max_tokens
        self.compression_threshold = compression_threshold or settings.context_compression_threshold
        self.record = ConversationContextRecord(conversation_id=conversation_id, user_id=user_id)
        self.compression_count = 0
        self.tokens_saved_total = 0
        self.logger = StructuredLogger(__name__)

    # Loading and persistence

    async def load_context(self) -> ConversationContextRecord:
        """Restore the stored context, or start one from the latest stored messages."""
        stored = await self.store.get_context(self.conversation_id)
        if stored is not None:
            self.record = stored
        else:
            recent = await self.store.list_recent_messages(self.conversation_id, LOAD_MESSAGE_LIMIT)
            self.record = ConversationContextRecord(
                conversation_id=self.conversation_id,
                user_id=self.user_id,
                messages=recent,
            )
        return self.record

    async def save_context(self) -> None:
        self.record.updated_at = utc_now()
        await self.store.put_context(self.record)

    @property
    def messages(self) -> List[Message]:
        return self.record.messages

    @property
    def draft(self):
        return self.record.meeting_draft

    @property
    def token_count(self) -> int:
        return count_message_tokens(self.record.messages)

    # Messages

    async def add_message(self, message: Message, correlation_id: Optional[str] = None) -> Message:
        """Append, persist, re-evaluate mode and compress when over the threshold."""
        self.record.messages.append(message)
        await self.save_context()
        await self.store.append_message(self.conversation_id, message)

        self.detect_mode_transition(correlation_id)

        if self.token_count > self.compression_threshold * self.max_context_length:
            await self.compress_context(HYBRID, correlation_id=correlation_id)

        await self.save_context()
        return message

    async def get_message_history(self, offset: int = 0, limit: int = 20) -> MessageHistoryPage:
        return await self.store.get_message_history(self.conversation_id, offset, limit)

    # Compression

    async def _summarize(self, correlation_id: Optional[str]) -> Optional[str]:
        if self.ai_service is None:
            return None
        try:
            summary = await self.ai_service.summarize_conversation(self.record.messages, correlation_id=correlation_id)
        except (RoutingError, BackendError) as e:
            self.logger.warning(
                "Summarization failed, using simple compression",
                correlation_id=correlation_id,
                conversation_id=self.conversation_id,
                error=str(e),
            )
            return None
        return summary or None

    def _resolve_strategy(self, strategy: str) -> str:
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown compression strategy: {strategy}")
        if strategy == HYBRID:
            return select_hybrid_strategy(len(self.record.messages), self.token_count, self.ai_service is not None)
        return strategy

    def _compressed(self, text: str, strategy: str) -> CompressedContext:
        original = self.token_count
        tokens = estimate_tokens(text)
        return CompressedContext(
            compressed_context=text,
            token_count=tokens,
            original_token_count=original,
            compression_ratio=round(tokens / original, 4) if original else 1.0,
            compression_strategy=strategy,
            tokens_saved=max(0, original - tokens),
        )

    async def get_compressed_context(
        self,
        strategy: str = HYBRID,
        correlation_id: Optional[str] = None
    ) -> CompressedContext:
        """
        Render the conversation compactly for a downstream model call.

        The returned ``compression_strategy`` is the strategy actually applied,
        which is ``simple`` whenever summarization was unavailable.
        """
        applied = self._resolve_strategy(strategy)
        if applied == AI_SUMMARIZATION:
            summary = await self._summarize(correlation_id)
            if summary:
                return self._compressed(build_summary_context(self.record, summary), AI_SUMMARIZATION)
        return self._compressed(build_simple_context(self.record), SIMPLE)

    async def compress_context(self, strategy: str = HYBRID, correlation_id: Optional[str] = None) -> bool:
        """
        Shrink the live window. Returns False when there was too little to compress.
        """
        message_count = len(self.record.messages)
        if message_count <= MIN_MESSAGES_FOR_COMPRESSION:
            return False

        original_tokens = self.token_count
        applied = self._resolve_strategy(strategy)
        retained = None

        if applied == AI_SUMMARIZATION:
            summary = await self._summarize(correlation_id)
            if summary:
                summary_message = Message(
                    role="assistant",
                    content=f"Summary of earlier conversation: {summary}",
                    metadata={"summary": True, "summarized_messages": message_count - SUMMARY_KEEP_RECENT},
                )
                retained = [summary_message] + self.record.messages[-SUMMARY_KEEP_RECENT:]
            else:
                applied = SIMPLE

        if retained is None:
            retained = select_retained_messages(
                self.record.messages, original_tokens, self.record.compression_level
            )
            if len(retained) >= message_count:
                return False

        self._apply_compression(retained, original_tokens, applied, correlation_id)
        await self.save_context()
        return True

    async def manual_compression(self, keep_recent: int = 8, keep_initial: int = 2) -> bool:
        if len(self.record.messages) <= keep_recent + keep_initial:
            return False
        original_tokens = self.token_count
        retained = select_retained_messages(
            self.record.messages, original_tokens, keep_recent=keep_recent, keep_initial=keep_initial
        )
        self._apply_compression(retained, original_tokens, "manual")
        await self.save_context()
        return True

    def _apply_compression(
        self,
        retained: List[Message],
        original_tokens: int,
        strategy: str,
        correlation_id: Optional[str] = None
    ) -> None:
        removed = len(self.record.messages) - len(retained)
        self.record.messages = retained
        self.record.compression_level += 1
        self.compression_count += 1
        saved = max(0, original_tokens - self.token_count)
        self.tokens_saved_total += saved
        self.logger.info(
            "Context compressed",
            correlation_id=correlation_id,
            conversation_id=self.conversation_id,
            strategy=strategy,
            removed_messages=removed,
            tokens_saved=saved,
            compression_level=self.record.compression_level,
        )

    def get_compression_recommendation(self) -> Dict[str, Any]:
        tokens = self.token_count
        limit = self.compression_threshold * self.max_context_length
        message_count = len(self.record.messages)
        if message_count <= MIN_MESSAGES_FOR_COMPRESSION:
            return {"should_compress": False, "reason": "Too few messages to compress", "recommended_strategy": SIMPLE}
        if tokens > limit:
            return {
                "should_compress": True,
                "reason": f"Token count {tokens} exceeds threshold {int(limit)}",
                "recommended_strategy": self._resolve_strategy(HYBRID),
            }
        return {"should_compress": False, "reason": "Context is within limits", "recommended_strategy": SIMPLE}

    # Mode and draft

    def detect_mode_transition(self, correlation_id: Optional[str] = None) -> str:
        previous = self.record.mode
        mode = self.classifier.classify(self.record.messages, previous, self.record.meeting_draft)
        if mode != previous:
            self.record.mode = mode
            self.logger.info(
                "Conversation mode changed",
                correlation_id=correlation_id,
                conversation_id=self.conversation_id,
                from_mode=previous,
                to_mode=mode,
            )
        return mode

    async def update_meeting_data(self, update: Union[MeetingDraftUpdate, Dict[str, Any]]) -> List[str]:
        """
        Merge a partial update into the draft.

        Returns:
            Names of the fields that changed

        Raises:
            pydantic.ValidationError: if a dict update has malformed values
            InvalidTimeRangeError: if the update would leave the end at or before the start;
                the draft is left unchanged
        """
        if not isinstance(update, MeetingDraftUpdate):
            update = MeetingDraftUpdate.model_validate(update)

        draft, changed = merge_meeting_draft(self.record.meeting_draft, update)
        self.record.meeting_draft = draft
        self.record.time_collection_complete = is_time_collection_complete(draft)
        if "start_time" in changed or "end_time" in changed:
            self.record.availability_checked = False
            self.record.availability_result = None

        if changed:
            await self.save_context()
        return changed

    async def clear_meeting_data(self) -> None:
        self.record.meeting_draft = None
        self.record.time_collection_complete = False
        self.record.availability_checked = False
        self.record.availability_result = None
        await self.save_context()

    # Workflow signals

    def validate_workflow_step(self, step: str, draft=None) -> ValidationResult:
        """Time gate for ``step``, against the stored draft or a pending one."""
        reason = TIME_GATED_STEPS.get(step)
        complete = self.record.time_collection_complete if draft is None else is_time_collection_complete(draft)
        if reason and not complete:
            return ValidationResult.from_lists([reason])
        return ValidationResult()

    def next_required_step(self) -> str:
        draft = self.record.meeting_draft
        if draft is None:
            return "intent_detection"
        if not draft.type:
            return "meeting_type_selection"
        if not self.record.time_collection_complete:
            return "time_date_collection"
        if not self.record.availability_checked:
            return "availability_check"
        if draft.type == "online" and not draft.attendees:
            return "attendee_collection"
        if not draft.title or (draft.type == "physical" and not draft.location):
            return "meeting_details_collection"
        return "validation"

    def get_workflow_state(self) -> Dict[str, Any]:
        return {
            "mode": self.record.mode,
            "has_meeting_draft": self.record.meeting_draft is not None,
            "time_collection_complete": self.record.time_collection_complete,
            "availability_checked": self.record.availability_checked,
            "calendar_access": self.record.calendar_access_status.has_access
            if self.record.calendar_access_status else None,
            "next_required_step": self.next_required_step(),
        }

    async def store_availability_result(self, result: AvailabilityResult) -> None:
        self.record.availability_checked = True
        self.record.availability_result = result
        await self.save_context()

    async def clear_availability_result(self) -> None:
        self.record.availability_checked = False
        self.record.availability_result = None
        await self.save_context()

    async def set_calendar_access_status(self, status: CalendarAccessStatus) -> None:
        self.record.calendar_access_status = status
        await self.save_context()

    async def set_workflow_state(self, state: Optional[Dict[str, Any]]) -> None:
        self.record.workflow_state = state
        await self.save_context()

    # Metrics

    def get_stats(self) -> Dict[str, Any]:
        return {
            "message_count": len(self.record.messages),
            "token_count": self.token_count,
            "compression_level": self.record.compression_level,
            "mode": self.record.mode,
            "has_meeting_draft": self.record.meeting_draft is not None,
        }

    def get_performance_metrics(self) -> Dict[str, Any]:
        tokens = self.token_count
        saved = self.tokens_saved_total
        return {
            "token_efficiency": round(tokens / self.max_context_length, 4),
            "compression_effectiveness": round(saved / (saved + tokens), 4) if saved + tokens else 0.0,
            "compressions": self.compression_count,
            "tokens_saved": saved,
        }

    def get_optimization_recommendations(self) -> List[str]:
        recommendations = []
        tokens = self.token_count
        if tokens > self.compression_threshold * self.max_context_length:
            recommendations.append("Compress the conversation context")
        if self.record.compression_level >= 3:
            recommendations.append("Start a new conversation to reset accumulated summaries")
        if self.record.mode == "scheduling" and self.record.meeting_draft is None:
            recommendations.append("Capture meeting details into a draft")
        if len(self.record.messages) > 2 * LOAD_MESSAGE_LIMIT:
            recommendations.append("Use AI summarization for long conversations")
        return recommendations

    async def reset(self) -> None:
        """Clear the live window and draft. Stored history and compression level are kept."""
        self.record = ConversationContextRecord(
            conversation_id=self.conversation_id,
            user_id=self.user_id,
            compression_level=self.record.compression_level,
            created_at=self.record.created_at,
        )
        await self.save_context()

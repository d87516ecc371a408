"""Meeting operations expressed over the AI router."""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from meeting_scheduler.llm.prompts import (
    AGENDA_GENERATION_PROMPT,
    ATTENDEE_VERIFICATION_PROMPT,
    CHAT_RESPONSE_PROMPT,
    CONVERSATION_SUMMARIZATION_PROMPT,
    MEETING_INTENT_EXTRACTION_PROMPT,
    PURPOSE_ENHANCEMENT_PROMPT,
    SCHEDULER_SYSTEM_PROMPT,
    TIME_EXTRACTION_PROMPT,
    TITLE_GENERATION_PROMPT,
    fill_prompt,
)
from meeting_scheduler.memory.schemas import MeetingDraft, Message
from meeting_scheduler.router.ai_router import AIRouter, RoutingError
from meeting_scheduler.router.degradation import DEFAULT_CHAT_REPLY, rule_based_purpose, rule_based_titles
from meeting_scheduler.router.parsing import coerce_confidence, parse_json_response
from meeting_scheduler.router import routing_rules as ops
from meeting_scheduler.utils.date_utils import parse_iso_datetime, utc_now
from meeting_scheduler.utils.logging_utils import StructuredLogger

INTENT_WINDOW = 10
MEETING_INTENTS = ("create_meeting", "schedule_meeting")


class ExtractedFields(BaseModel):
    """Meeting fields found in the conversation."""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[int] = None
    purpose: Optional[str] = None
    participants: List[str] = Field(default_factory=list)
    suggested_title: Optional[str] = None
    type: Optional[str] = None
    location: Optional[str] = None


class MeetingExtraction(BaseModel):
    """Parsed result of intent extraction."""
    intent: str = "other"
    confidence: float = 0.0
    fields: ExtractedFields = Field(default_factory=ExtractedFields)
    missing: List[str] = Field(default_factory=list)

    def is_meeting_intent(self, threshold: float) -> bool:
        return self.intent in MEETING_INTENTS and self.confidence >= threshold


class TimeExtraction(BaseModel):
    """Parsed result of time extraction."""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[int] = None
    confidence: float = 0.0


def _as_int(value: Any) -> Optional[int]:
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip() and value.strip().lower() != "null":
        return value.strip()
    return None


def _format_messages(messages: List[Message]) -> str:
    return "\n".join(
        f"{'User' if message.role == 'user' else 'Assistant'}: {message.content}" for message in messages
    )


def _describe_draft(draft: Optional[MeetingDraft]) -> str:
    if not draft:
        return "No meeting details yet."
    parts = []
    if draft.title:
        parts.append(f"title={draft.title}")
    if draft.type:
        parts.append(f"type={draft.type}")
    if draft.start_time:
        parts.append(f"start={draft.start_time.isoformat()}")
    if draft.end_time:
        parts.append(f"end={draft.end_time.isoformat()}")
    if draft.attendees:
        parts.append(f"attendees={', '.join(draft.attendee_emails())}")
    return "Known meeting details: " + "; ".join(parts) if parts else "No meeting details yet."


def parse_meeting_extraction(text: Optional[str]) -> MeetingExtraction:
    """Turn model output into a MeetingExtraction; malformed output becomes intent 'other'."""
    data = parse_json_response(text)
    if not isinstance(data, dict):
        return MeetingExtraction()

    raw_fields = data.get("fields") if isinstance(data.get("fields"), dict) else {}
    participants = raw_fields.get("participants") or []
    if isinstance(participants, str):
        participants = [participants]
    meeting_type = _as_text(raw_fields.get("type"))

    fields = ExtractedFields(
        start_time=parse_iso_datetime(_as_text(raw_fields.get("startTime"))),
        end_time=parse_iso_datetime(_as_text(raw_fields.get("endTime"))),
        duration=_as_int(raw_fields.get("duration")),
        purpose=_as_text(raw_fields.get("purpose")),
        participants=[p.strip() for p in participants if isinstance(p, str) and "@" in p],
        suggested_title=_as_text(raw_fields.get("suggestedTitle")),
        type=meeting_type.lower() if meeting_type and meeting_type.lower() in ("online", "physical") else None,
        location=_as_text(raw_fields.get("location")),
    )
    intent = data.get("intent") if data.get("intent") in MEETING_INTENTS else "other"
    missing = data.get("missing") if isinstance(data.get("missing"), list) else []
    return MeetingExtraction(
        intent=intent,
        confidence=coerce_confidence(data.get("confidence")),
        fields=fields,
        missing=[str(item) for item in missing],
    )


def parse_time_extraction(text: Optional[str]) -> TimeExtraction:
    """Turn model output into a TimeExtraction; malformed output has confidence 0."""
    data = parse_json_response(text)
    if not isinstance(data, dict):
        return TimeExtraction()
    start_time = parse_iso_datetime(_as_text(data.get("startTime")))
    if start_time is None:
        return TimeExtraction()
    return TimeExtraction(
        start_time=start_time,
        end_time=parse_iso_datetime(_as_text(data.get("endTime"))),
        duration=_as_int(data.get("duration")),
        confidence=coerce_confidence(data.get("confidence")),
    )


class MeetingAIService:
    """
    Scheduler operations on top of the AI router.

    Blocking operations (intent, agenda, attendee verification, time extraction,
    summarization) let RoutingError propagate. Cosmetic operations (titles,
    purpose wording, chat replies) substitute rule-based output instead.
    """

    def __init__(self, router: AIRouter, clock: Callable[[], datetime] = utc_now):
        self.router = router
        self.clock = clock
        self.logger = StructuredLogger(__name__)

    async def extract_meeting_intent(
        self,
        messages: List[Message],
        draft: Optional[MeetingDraft] = None,
        correlation_id: Optional[str] = None
    ) -> MeetingExtraction:
        """
        Detect meeting intent over the latest messages.

        Raises:
            RoutingError: when no backend could answer
        """
        window = messages[-INTENT_WINDOW:]
        latest = window[-1].content if window else ""
        context = _format_messages(window[:-1]) or "(no earlier messages)"
        prompt = fill_prompt(
            MEETING_INTENT_EXTRACTION_PROMPT,
            now=self.clock().isoformat(),
            context=f"{_describe_draft(draft)}\n{context}",
            message=latest,
        )
        result = await self.router.route(
            ops.EXTRACT_MEETING_INTENT,
            prompt,
            system_prompt=SCHEDULER_SYSTEM_PROMPT,
            response_format="json",
            correlation_id=correlation_id,
        )
        extraction = parse_meeting_extraction(result.text)
        self.logger.info(
            "Meeting intent extracted",
            correlation_id=correlation_id,
            intent=extraction.intent,
            confidence=extraction.confidence,
            backend=result.backend,
        )
        return extraction

    async def generate_meeting_titles(
        self,
        purpose: str,
        participants: Optional[List[str]] = None,
        context: str = "",
        correlation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Suggest up to three titles. Never raises.

        Returns:
            Dictionary with suggestions, context and a degraded flag
        """
        participants = participants or []
        prompt = fill_prompt(
            TITLE_GENERATION_PROMPT,
            purpose=purpose,
            participants=", ".join(participants) or "none",
            context=context,
        )
        try:
            result = await self.router.route(
                ops.GENERATE_MEETING_TITLES,
                prompt,
                system_prompt=SCHEDULER_SYSTEM_PROMPT,
                response_format="json",
                correlation_id=correlation_id,
            )
            data = parse_json_response(result.text)
        except RoutingError as e:
            self.logger.warning("Title generation degraded", correlation_id=correlation_id, error_code=e.code)
            data = None

        suggestions = []
        if isinstance(data, dict) and isinstance(data.get("suggestions"), list):
            suggestions = [s.strip() for s in data["suggestions"] if isinstance(s, str) and s.strip()][:3]
        if suggestions:
            return {"suggestions": suggestions, "context": str(data.get("context") or ""), "degraded": False}

        self.router.record_degradation(ops.GENERATE_MEETING_TITLES)
        return {
            "suggestions": rule_based_titles(purpose, participants),
            "context": "Generated from the meeting purpose",
            "degraded": True,
        }

    async def enhance_purpose_wording(self, purpose: str, correlation_id: Optional[str] = None) -> str:
        """Polish the purpose text. Falls back to the tidied original."""
        if not purpose or not purpose.strip():
            return ""
        try:
            result = await self.router.route(
                ops.ENHANCE_PURPOSE_WORDING,
                fill_prompt(PURPOSE_ENHANCEMENT_PROMPT, purpose=purpose),
                system_prompt=SCHEDULER_SYSTEM_PROMPT,
                correlation_id=correlation_id,
            )
            enhanced = result.text.strip().strip('"').strip()
            if enhanced:
                return enhanced
        except RoutingError as e:
            self.logger.warning("Purpose wording degraded", correlation_id=correlation_id, error_code=e.code)
        self.router.record_degradation(ops.ENHANCE_PURPOSE_WORDING)
        return rule_based_purpose(purpose)

    async def generate_chat_response(
        self,
        message: str,
        context: str = "",
        correlation_id: Optional[str] = None
    ) -> str:
        """Casual conversational reply. Falls back to a canned reply."""
        try:
            result = await self.router.route(
                ops.GENERATE_CHAT_RESPONSE,
                fill_prompt(CHAT_RESPONSE_PROMPT, context=context or "(none)", message=message),
                system_prompt=SCHEDULER_SYSTEM_PROMPT,
                correlation_id=correlation_id,
            )
            if result.text.strip():
                return result.text.strip()
        except RoutingError as e:
            self.logger.warning("Chat response degraded", correlation_id=correlation_id, error_code=e.code)
        self.router.record_degradation(ops.GENERATE_CHAT_RESPONSE)
        return DEFAULT_CHAT_REPLY

    async def generate_meeting_agenda(
        self,
        title: str,
        purpose: Optional[str] = None,
        participants: Optional[List[str]] = None,
        duration: int = 60,
        context: str = "",
        correlation_id: Optional[str] = None
    ) -> str:
        """
        Generate agenda text for a meeting.

        Raises:
            RoutingError: when no backend could answer
        """
        prompt = fill_prompt(
            AGENDA_GENERATION_PROMPT,
            title=title,
            duration=duration,
            purpose=purpose or title,
            participants=", ".join(participants or []) or "not specified",
            context=context or "none",
        )
        result = await self.router.route(
            ops.GENERATE_MEETING_AGENDA,
            prompt,
            system_prompt=SCHEDULER_SYSTEM_PROMPT,
            correlation_id=correlation_id,
        )
        return result.text.strip()

    async def verify_attendees(
        self,
        emails: List[str],
        correlation_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """
        Ask a backend to verify email addresses.

        Returns:
            One entry per address the backend reported on; [] when unparseable

        Raises:
            RoutingError: when no backend could answer
        """
        if not emails:
            return []
        result = await self.router.route(
            ops.VERIFY_ATTENDEES,
            fill_prompt(ATTENDEE_VERIFICATION_PROMPT, emails=", ".join(emails)),
            response_format="json",
            correlation_id=correlation_id,
        )
        data = parse_json_response(result.text)
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            return []
        verified = []
        for item in data:
            if not isinstance(item, dict) or not isinstance(item.get("email"), str):
                continue
            verified.append({
                "email": item["email"].strip(),
                "valid": bool(item.get("valid")),
                "trusted": bool(item.get("trusted")),
                "first_name": _as_text(item.get("firstName")),
                "last_name": _as_text(item.get("lastName")),
            })
        return verified

    async def extract_time(self, message: str, correlation_id: Optional[str] = None) -> TimeExtraction:
        """
        Extract a meeting time from one message.

        Raises:
            RoutingError: when no backend could answer
        """
        result = await self.router.route(
            ops.EXTRACT_TIME,
            fill_prompt(TIME_EXTRACTION_PROMPT, now=self.clock().isoformat(), message=message),
            response_format="json",
            correlation_id=correlation_id,
        )
        return parse_time_extraction(result.text)

    async def summarize_conversation(
        self,
        messages: List[Message],
        correlation_id: Optional[str] = None
    ) -> str:
        """
        Summarize a conversation for context compression.

        Raises:
            RoutingError: when no backend could answer
        """
        result = await self.router.route(
            ops.SUMMARIZE_CONVERSATION,
            fill_prompt(CONVERSATION_SUMMARIZATION_PROMPT, messages=_format_messages(messages)),
            correlation_id=correlation_id,
        )
        return result.text.strip()

    def get_usage_stats(self) -> Dict[str, Any]:
        return self.router.get_usage_stats()

    def get_service_status(self) -> Dict[str, Any]:
        return self.router.get_service_status()

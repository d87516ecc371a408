"""Shared pytest fixtures and utilities for all tests."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
from unittest.mock import AsyncMock, MagicMock

from meeting_scheduler.context.conversation_context import ConversationContextEngine
from meeting_scheduler.memory.schemas import CalendarAccessStatus
from meeting_scheduler.memory.store import InMemoryConversationStore
from meeting_scheduler.orchestrator.workflow import MeetingWorkflowOrchestrator
from meeting_scheduler.router.operations import ExtractedFields, MeetingExtraction, TimeExtraction
from meeting_scheduler.validation.attendee_validator import AttendeeValidator


# Monday morning; meetings in tests are booked for the following afternoon
FIXED_NOW = datetime(2030, 1, 7, 9, 0, tzinfo=timezone.utc)
MEETING_START = datetime(2030, 1, 8, 14, 0, tzinfo=timezone.utc)
MEETING_END = MEETING_START + timedelta(hours=1)

SAMPLE_AGENDA = (
    "## Quarterly Planning Agenda\n\n"
    "1. Review last quarter (20 min)\n"
    "2. Set goals for next quarter (30 min)\n"
    "3. Next steps (10 min)"
)


def build_extraction(
    intent: str = "schedule_meeting",
    confidence: float = 0.9,
    start_time: Optional[datetime] = MEETING_START,
    duration: Optional[int] = 60,
    purpose: Optional[str] = "Quarterly planning",
    participants: Optional[List[str]] = None,
    meeting_type: Optional[str] = "online",
    location: Optional[str] = None,
    suggested_title: Optional[str] = None
) -> MeetingExtraction:
    """Build a MeetingExtraction as returned by the AI service."""
    return MeetingExtraction(
        intent=intent,
        confidence=confidence,
        fields=ExtractedFields(
            start_time=start_time,
            duration=duration,
            purpose=purpose,
            participants=["jane.doe@example.com"] if participants is None else participants,
            type=meeting_type,
            location=location,
            suggested_title=suggested_title,
        ),
    )


def build_calendar_event(
    event_id: str = "busy-1",
    summary: str = "Design review",
    start: datetime = MEETING_START,
    end: datetime = MEETING_END,
    **extra
) -> dict:
    """Build a Google Calendar event dictionary."""
    return {
        "id": event_id,
        "summary": summary,
        "start": {"dateTime": start.isoformat()},
        "end": {"dateTime": end.isoformat()},
        **extra,
    }


@pytest.fixture
def clock():
    """Fixed wall clock."""
    return lambda: FIXED_NOW


@pytest.fixture
def memory_store():
    """In-memory conversation store."""
    return InMemoryConversationStore()


@pytest.fixture
def mock_ai_service():
    """Mock AI service with scripted async operations."""
    service = MagicMock()
    service.extract_meeting_intent = AsyncMock(return_value=build_extraction())
    service.generate_meeting_titles = AsyncMock(return_value={
        "suggestions": ["Quarterly Planning", "Planning Sync"],
        "context": "",
        "degraded": False,
    })
    service.generate_chat_response = AsyncMock(return_value="Happy to help!")
    service.enhance_purpose_wording = AsyncMock(side_effect=lambda purpose, correlation_id=None: purpose)
    service.generate_meeting_agenda = AsyncMock(return_value=SAMPLE_AGENDA)
    service.verify_attendees = AsyncMock(return_value=[])
    service.extract_time = AsyncMock(return_value=TimeExtraction())
    service.summarize_conversation = AsyncMock(return_value="The user wants to plan a meeting.")
    service.get_usage_stats = MagicMock(return_value={"backends": {}, "operations": {}})
    service.get_service_status = MagicMock(return_value={"status": "healthy"})
    return service


@pytest.fixture
def mock_calendar():
    """Mock calendar adapter with access and an empty calendar."""
    calendar = MagicMock()
    calendar.verify_access = AsyncMock(
        return_value=CalendarAccessStatus(has_access=True, needs_refresh=False, token_valid=True)
    )
    calendar.list_events = AsyncMock(return_value=[])
    calendar.create_event = AsyncMock(return_value={
        "id": "evt-123",
        "html_link": "https://calendar.google.com/event?eid=evt-123",
        "meeting_link": "https://meet.google.com/abc-defg-hij",
    })
    return calendar


@pytest.fixture
def attendee_validator():
    """Validator without a backend, so only the format check applies."""
    return AttendeeValidator()


@pytest.fixture
def context_engine(memory_store, mock_ai_service):
    """Context engine for conversation conv-1."""
    return ConversationContextEngine("conv-1", "user-1", memory_store, ai_service=mock_ai_service)


@pytest.fixture
def orchestrator(context_engine, mock_ai_service, mock_calendar, attendee_validator, clock):
    """Workflow orchestrator wired to mocks."""
    return MeetingWorkflowOrchestrator(
        context_engine,
        mock_ai_service,
        calendar=mock_calendar,
        attendee_validator=attendee_validator,
        clock=clock,
    )

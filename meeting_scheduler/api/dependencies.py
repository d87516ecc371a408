"""Application service wiring for the API layer."""

from fastapi import Request

from meeting_scheduler.config import settings
from meeting_scheduler.db.session import SessionLocal
from meeting_scheduler.integration.cache import ConversationCache, KeyedLock
from meeting_scheduler.integration.workflow_chat import WorkflowChatIntegration
from meeting_scheduler.integrations.google_calendar_client import GoogleCalendarClient
from meeting_scheduler.llm.gemini_client import GeminiClient
from meeting_scheduler.llm.mistral_client import MistralClient
from meeting_scheduler.memory.store import InMemoryConversationStore, SqlConversationStore
from meeting_scheduler.router.ai_router import AIRouter
from meeting_scheduler.router.operations import MeetingAIService
from meeting_scheduler.router.routing_rules import GEMINI, MISTRAL
from meeting_scheduler.validation.attendee_validator import AttendeeValidator


def build_backends():
    """Model backends keyed by name. A backend without an API key is left out."""
    backends = {}
    if settings.gemini_api_key:
        backends[GEMINI] = GeminiClient()
    if settings.mistral_api_key:
        backends[MISTRAL] = MistralClient()
    return backends


def build_store():
    if settings.storage_backend == "memory":
        return InMemoryConversationStore()
    return SqlConversationStore(SessionLocal)


def build_integration(backends=None, store=None, calendar=None) -> WorkflowChatIntegration:
    """Assemble the router, services and caches behind the chat API."""
    router = AIRouter(backends if backends is not None else build_backends())
    ai_service = MeetingAIService(router)
    return WorkflowChatIntegration(
        store=store or build_store(),
        ai_service=ai_service,
        calendar=calendar or GoogleCalendarClient(),
        attendee_validator=AttendeeValidator(ai_service=ai_service),
        cache=ConversationCache(),
        locks=KeyedLock(),
    )


def get_integration(request: Request) -> WorkflowChatIntegration:
    return request.app.state.integration

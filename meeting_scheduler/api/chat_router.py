"""Chat and workflow API router."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from meeting_scheduler.api.dependencies import get_integration
from meeting_scheduler.integration.workflow_chat import (
    ChatEnvelope,
    ConversationNotFoundError,
    WorkflowChatIntegration,
)
from meeting_scheduler.memory.schemas import MessageHistoryPage
from meeting_scheduler.utils.logging_utils import StructuredLogger, generate_correlation_id


router = APIRouter(prefix="/api", tags=["chat"])
logger = StructuredLogger(__name__)


class ChatMessage(BaseModel):
    """Chat message request model."""
    message: str = Field(min_length=1)
    user_id: str
    conversation_id: Optional[str] = None


class InteractionRequest(BaseModel):
    """Structured UI interaction, tagged by ``kind``."""
    user_id: str
    conversation_id: Optional[str] = None
    payload: Dict[str, Any]


class AdvanceRequest(BaseModel):
    user_id: str
    step: str
    data: Optional[Dict[str, Any]] = None
    conversation_id: Optional[str] = None


class ResetRequest(BaseModel):
    user_id: str


def _server_error(action: str, error: Exception, correlation_id: str) -> HTTPException:
    logger.error(
        f"Error {action}",
        correlation_id=correlation_id,
        error=str(error),
        error_type=type(error).__name__,
    )
    return HTTPException(status_code=500, detail=f"Error {action}: {str(error)}")


@router.post("/chat", response_model=ChatEnvelope)
async def chat(
    chat_message: ChatMessage,
    integration: WorkflowChatIntegration = Depends(get_integration)
):
    """Process a chat message and return the assistant's envelope."""
    correlation_id = generate_correlation_id()
    try:
        return await integration.process_message(
            chat_message.user_id,
            chat_message.message,
            conversation_id=chat_message.conversation_id,
            correlation_id=correlation_id,
        )
    except Exception as e:
        raise _server_error("processing message", e, correlation_id)


@router.post("/chat/interaction", response_model=ChatEnvelope)
async def chat_interaction(
    request: InteractionRequest,
    integration: WorkflowChatIntegration = Depends(get_integration)
):
    """Apply a structured interaction from the chat UI."""
    correlation_id = generate_correlation_id()
    try:
        return await integration.handle_structured_interaction(
            request.user_id,
            request.payload,
            conversation_id=request.conversation_id,
            correlation_id=correlation_id,
        )
    except Exception as e:
        raise _server_error("processing interaction", e, correlation_id)


@router.post("/workflow/advance")
async def advance_workflow(
    request: AdvanceRequest,
    integration: WorkflowChatIntegration = Depends(get_integration)
):
    correlation_id = generate_correlation_id()
    try:
        return await integration.advance_step(
            request.user_id,
            request.step,
            data=request.data,
            conversation_id=request.conversation_id,
            correlation_id=correlation_id,
        )
    except Exception as e:
        raise _server_error("advancing workflow", e, correlation_id)


@router.get("/workflow/{conversation_id}")
async def get_workflow(
    conversation_id: str,
    user_id: str = Query(..., description="Owner of the conversation"),
    integration: WorkflowChatIntegration = Depends(get_integration)
):
    correlation_id = generate_correlation_id()
    try:
        return await integration.get_workflow_state(user_id, conversation_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise _server_error("loading workflow", e, correlation_id)


@router.post("/workflow/{conversation_id}/reset")
async def reset_workflow(
    conversation_id: str,
    request: ResetRequest,
    integration: WorkflowChatIntegration = Depends(get_integration)
):
    correlation_id = generate_correlation_id()
    try:
        return await integration.reset_workflow(request.user_id, conversation_id, correlation_id=correlation_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise _server_error("resetting workflow", e, correlation_id)


@router.get("/conversations/{conversation_id}/messages", response_model=MessageHistoryPage)
async def get_messages(
    conversation_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    integration: WorkflowChatIntegration = Depends(get_integration)
):
    """Page through the full stored history of a conversation."""
    correlation_id = generate_correlation_id()
    try:
        return await integration.get_conversation_history(conversation_id, offset, limit)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise _server_error("loading messages", e, correlation_id)


@router.get("/router/status")
async def router_status(integration: WorkflowChatIntegration = Depends(get_integration)):
    """Backend health, circuit state and usage counters."""
    return integration.get_router_status()

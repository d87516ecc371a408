"""Conversation repository for database operations."""

from typing import Optional, List
from sqlalchemy.orm import Session
from sqlalchemy import desc, asc

from meeting_scheduler.memory.models import Conversation, ConversationMessage
from meeting_scheduler.memory.schemas import ConversationContextRecord, Message
from meeting_scheduler.utils.date_utils import utc_now, parse_iso_datetime


def _to_message(row: ConversationMessage) -> Message:
    return Message(
        id=row.message_id,
        role=row.role,
        content=row.content,
        timestamp=parse_iso_datetime(row.timestamp) or utc_now(),
        metadata=row.extra_data,
    )


class ConversationRepository:
    """Repository for conversation state and message history."""

    def __init__(self, db: Session):
        self.db = db

    # Context operations
    def get_context(self, conversation_id: str) -> Optional[ConversationContextRecord]:
        """Get the stored context of a conversation."""
        conversation = self.db.query(Conversation).filter(Conversation.id == conversation_id).first()
        if not conversation:
            return None
        return ConversationContextRecord.model_validate(conversation.state)

    def put_context(self, record: ConversationContextRecord) -> None:
        """Create or replace the stored context of a conversation."""
        state = record.model_dump(mode="json")
        conversation = self.db.query(Conversation).filter(
            Conversation.id == record.conversation_id
        ).first()
        if conversation:
            conversation.state = state
            conversation.user_id = record.user_id
            conversation.updated_at = utc_now()
        else:
            conversation = Conversation(
                id=record.conversation_id,
                user_id=record.user_id,
                state=state,
            )
            self.db.add(conversation)
        self.db.commit()

    def delete_context(self, conversation_id: str) -> bool:
        """Delete a conversation and its history."""
        self.db.query(ConversationMessage).filter(
            ConversationMessage.conversation_id == conversation_id
        ).delete()
        deleted = self.db.query(Conversation).filter(Conversation.id == conversation_id).delete()
        self.db.commit()
        return deleted > 0

    # Message operations
    def append_message(self, conversation_id: str, message: Message) -> None:
        """Append a message to the full history. Re-appending the same id is a no-op."""
        exists = self.db.query(ConversationMessage.id).filter(
            ConversationMessage.message_id == message.id
        ).first()
        if exists:
            return
        row = ConversationMessage(
            message_id=message.id,
            conversation_id=conversation_id,
            role=message.role,
            content=message.content,
            extra_data=message.metadata,
            timestamp=message.timestamp,
        )
        self.db.add(row)
        self.db.commit()

    def list_recent_messages(self, conversation_id: str, limit: int = 20) -> List[Message]:
        """Get the most recent messages, oldest first."""
        rows = (
            self.db.query(ConversationMessage)
            .filter(ConversationMessage.conversation_id == conversation_id)
            .order_by(desc(ConversationMessage.id))
            .limit(limit)
            .all()
        )
        return [_to_message(row) for row in reversed(rows)]

    def list_messages(self, conversation_id: str, offset: int = 0, limit: int = 20) -> List[Message]:
        """Get a page of the full history in append order."""
        rows = (
            self.db.query(ConversationMessage)
            .filter(ConversationMessage.conversation_id == conversation_id)
            .order_by(asc(ConversationMessage.id))
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [_to_message(row) for row in rows]

    def count_messages(self, conversation_id: str) -> int:
        """Count stored messages of a conversation."""
        return self.db.query(ConversationMessage).filter(
            ConversationMessage.conversation_id == conversation_id
        ).count()

"""Database models for conversations and their message history."""

from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, JSON
from sqlalchemy.orm import declarative_base

from meeting_scheduler.utils.date_utils import utc_now

Base = declarative_base()


class Conversation(Base):
    """Conversation model holding the serialized context engine state."""
    __tablename__ = "conversations"

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    state = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class ConversationMessage(Base):
    """Full, append-only message history of a conversation."""
    __tablename__ = "conversation_messages"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    message_id = Column(String, unique=True, nullable=False, index=True)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False, index=True)
    role = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    extra_data = Column(JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utc_now)

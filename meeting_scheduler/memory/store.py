"""Async storage adapters used by the conversation context engine."""

import asyncio
from typing import Callable, Dict, List, Optional, Protocol

from sqlalchemy.orm import Session

from meeting_scheduler.memory.repo import ConversationRepository
from meeting_scheduler.memory.schemas import ConversationContextRecord, Message, MessageHistoryPage


class ConversationStore(Protocol):
    """Record store for conversation contexts and their message history."""

    async def get_context(self, conversation_id: str) -> Optional[ConversationContextRecord]: ...

    async def put_context(self, record: ConversationContextRecord) -> None: ...

    async def append_message(self, conversation_id: str, message: Message) -> None: ...

    async def list_recent_messages(self, conversation_id: str, limit: int = 20) -> List[Message]: ...

    async def get_message_history(self, conversation_id: str, offset: int = 0, limit: int = 20) -> MessageHistoryPage: ...

    async def delete_context(self, conversation_id: str) -> None: ...


class SqlConversationStore:
    """
    ConversationStore backed by ConversationRepository.

    Each call opens its own session and runs in a worker thread so the event
    loop is never blocked on database I/O.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    async def _run(self, operation: Callable[[ConversationRepository], object]):
        def call():
            db = self.session_factory()
            try:
                return operation(ConversationRepository(db))
            finally:
                db.close()
        return await asyncio.to_thread(call)

    async def get_context(self, conversation_id: str) -> Optional[ConversationContextRecord]:
        return await self._run(lambda repo: repo.get_context(conversation_id))

    async def put_context(self, record: ConversationContextRecord) -> None:
        await self._run(lambda repo: repo.put_context(record))

    async def append_message(self, conversation_id: str, message: Message) -> None:
        await self._run(lambda repo: repo.append_message(conversation_id, message))

    async def list_recent_messages(self, conversation_id: str, limit: int = 20) -> List[Message]:
        return await self._run(lambda repo: repo.list_recent_messages(conversation_id, limit))

    async def get_message_history(self, conversation_id: str, offset: int = 0, limit: int = 20) -> MessageHistoryPage:
        def page(repo: ConversationRepository) -> MessageHistoryPage:
            total = repo.count_messages(conversation_id)
            messages = repo.list_messages(conversation_id, offset, limit)
            return MessageHistoryPage(
                messages=messages,
                total_count=total,
                has_more=offset + len(messages) < total,
            )
        return await self._run(page)

    async def delete_context(self, conversation_id: str) -> None:
        await self._run(lambda repo: repo.delete_context(conversation_id))


class InMemoryConversationStore:
    """ConversationStore kept in process memory, for tests and ephemeral runs."""

    def __init__(self):
        self.contexts: Dict[str, ConversationContextRecord] = {}
        self.messages: Dict[str, List[Message]] = {}

    async def get_context(self, conversation_id: str) -> Optional[ConversationContextRecord]:
        record = self.contexts.get(conversation_id)
        return record.model_copy(deep=True) if record else None

    async def put_context(self, record: ConversationContextRecord) -> None:
        self.contexts[record.conversation_id] = record.model_copy(deep=True)

    async def append_message(self, conversation_id: str, message: Message) -> None:
        history = self.messages.setdefault(conversation_id, [])
        if any(existing.id == message.id for existing in history):
            return
        history.append(message)

    async def list_recent_messages(self, conversation_id: str, limit: int = 20) -> List[Message]:
        if limit <= 0:
            return []
        return list(self.messages.get(conversation_id, [])[-limit:])

    async def get_message_history(self, conversation_id: str, offset: int = 0, limit: int = 20) -> MessageHistoryPage:
        history = self.messages.get(conversation_id, [])
        page = history[offset:offset + limit]
        return MessageHistoryPage(
            messages=list(page),
            total_count=len(history),
            has_more=offset + len(page) < len(history),
        )

    async def delete_context(self, conversation_id: str) -> None:
        self.contexts.pop(conversation_id, None)
        self.messages.pop(conversation_id, None)

"""Per-conversation caching and serialization primitives."""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, NamedTuple, Optional

from meeting_scheduler.config import settings
from meeting_scheduler.context.conversation_context import ConversationContextEngine
from meeting_scheduler.orchestrator.workflow import MeetingWorkflowOrchestrator
from meeting_scheduler.utils.ttl_cache import TTLCache


class ConversationSession(NamedTuple):
    context: ConversationContextEngine
    orchestrator: MeetingWorkflowOrchestrator


class ConversationCache:
    """Bounded TTL cache of live conversation sessions keyed by conversation id."""

    def __init__(self, max_size: Optional[int] = None, ttl_seconds: Optional[float] = None, clock=None):
        kwargs = {"clock": clock} if clock else {}
        self._cache: TTLCache[ConversationSession] = TTLCache(
            max_size or settings.conversation_cache_max_size,
            ttl_seconds or settings.conversation_cache_ttl_seconds,
            **kwargs
        )

    def get(self, conversation_id: str) -> Optional[ConversationSession]:
        return self._cache.get(conversation_id)

    def put(self, conversation_id: str, session: ConversationSession) -> None:
        self._cache.set(conversation_id, session)

    def evict(self, conversation_id: str) -> None:
        self._cache.pop(conversation_id)

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    def stats(self):
        return self._cache.stats()


class KeyedLock:
    """
    One asyncio lock per key.

    Requests for the same key run one at a time in arrival order; different
    keys never block each other. Locks are dropped once nobody holds or waits
    on them.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def __len__(self) -> int:
        return len(self._locks)

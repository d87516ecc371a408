"""Conversation mode classification."""

import re
from typing import List, Optional, Protocol

from meeting_scheduler.memory.schemas import MeetingDraft, Message

SCHEDULING_KEYWORDS = (
    "meeting", "schedule", "calendar", "appointment", "book", "plan", "when", "time", "date",
    "tomorrow", "next week", "weekdays", "am", "pm", "o'clock", "hour", "minute", "discuss",
    "call", "zoom", "teams",
)

APPROVAL_KEYWORDS = (
    "approve", "confirm", "yes", "looks good", "correct", "create", "book it", "schedule it",
    "send", "finalize", "proceed",
)


def _keyword_pattern(keywords) -> re.Pattern:
    alternatives = "|".join(re.escape(keyword) for keyword in keywords)
    return re.compile(rf"\b(?:{alternatives})s?\b", re.IGNORECASE)


_SCHEDULING = _keyword_pattern(SCHEDULING_KEYWORDS)
_APPROVAL = _keyword_pattern(APPROVAL_KEYWORDS)


class ModeClassifier(Protocol):
    """Maps recent messages onto a conversation mode."""

    def classify(self, messages: List[Message], current_mode: str, draft: Optional[MeetingDraft]) -> str: ...


class KeywordModeClassifier:
    """
    Keyword heuristics over the latest message.

    Approval wording is checked first, and only while scheduling, so that a
    plain "yes" confirms instead of restarting data collection.
    """

    def classify(self, messages: List[Message], current_mode: str, draft: Optional[MeetingDraft]) -> str:
        latest = messages[-1].content if messages else ""

        if current_mode == "scheduling" and _APPROVAL.search(latest):
            return "approval"
        if _SCHEDULING.search(latest):
            return "scheduling"
        if draft and (draft.title or draft.start_time or draft.type):
            return "scheduling"
        return "casual"

"""Token estimation and context rendering used by the conversation context engine."""

import math
import re
from typing import List, Optional

from meeting_scheduler.memory.schemas import ConversationContextRecord, Message

SIMPLE = "simple"
AI_SUMMARIZATION = "ai_summarization"
HYBRID = "hybrid"
STRATEGIES = (SIMPLE, AI_SUMMARIZATION, HYBRID)

MIN_MESSAGES_FOR_COMPRESSION = 10
SIMPLE_RECENT_MESSAGES = 8
SIMPLE_TRUNCATE_CHARS = 80
SUMMARY_TRUNCATE_CHARS = 60
MAX_KEY_POINTS = 5
MAX_PARTICIPANTS = 10
MAX_TIME_REFERENCES = 5

_BULLET = re.compile(r"^\s*(?:[•\-*]|\d+\.)\s+(.+)$")
_EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_TIME_REFERENCE = re.compile(
    r"\b(tomorrow|today|next week|monday|tuesday|wednesday|thursday|friday|saturday|sunday|"
    r"\d{1,2}:\d{2}|\d{1,2}\s?(?:am|pm))\b",
    re.IGNORECASE,
)


def estimate_tokens(text: str) -> int:
    """Approximate token count as one token per four characters."""
    return math.ceil(len(text or "") / 4)


def count_message_tokens(messages: List[Message]) -> int:
    return sum(estimate_tokens(message.content) for message in messages)


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def _role_prefix(message: Message) -> str:
    return "U" if message.role == "user" else "A"


def _header_lines(record: ConversationContextRecord) -> List[str]:
    lines = [f"Mode: {record.mode}"]
    draft = record.meeting_draft
    if draft:
        start = draft.start_time.isoformat() if draft.start_time else "unscheduled"
        lines.append(f"Meeting: {draft.title or 'Untitled'} at {start} with {len(draft.attendees)} attendees")
    return lines


def build_simple_context(record: ConversationContextRecord) -> str:
    """Mode, draft summary and the last few messages, each truncated."""
    lines = _header_lines(record)
    recent = record.messages[-SIMPLE_RECENT_MESSAGES:]
    if recent:
        lines.append("Recent:")
        lines.extend(
            f"{_role_prefix(message)}: {truncate(message.content, SIMPLE_TRUNCATE_CHARS)}" for message in recent
        )
    return "\n".join(lines)


def extract_key_points(text: str) -> List[str]:
    points = []
    for line in (text or "").splitlines():
        match = _BULLET.match(line)
        if match:
            points.append(match.group(1).strip())
        if len(points) >= MAX_KEY_POINTS:
            break
    return points


def _unique(values: List[str], limit: int) -> List[str]:
    unique = []
    for value in values:
        if value not in unique:
            unique.append(value)
        if len(unique) >= limit:
            break
    return unique


def extract_participants(messages: List[Message]) -> List[str]:
    found = []
    for message in messages:
        found.extend(email.lower() for email in _EMAIL.findall(message.content))
    return _unique(found, MAX_PARTICIPANTS)


def extract_time_references(messages: List[Message]) -> List[str]:
    found = []
    for message in messages:
        found.extend(match.lower() for match in _TIME_REFERENCE.findall(message.content))
    return _unique(found, MAX_TIME_REFERENCES)


def build_summary_context(record: ConversationContextRecord, summary: str) -> str:
    """Render a model summary together with the facts pulled out of the live window."""
    lines = _header_lines(record)
    lines.append(f"Summary: {summary.strip()}")

    key_points = extract_key_points(summary)
    if key_points:
        lines.append("Key points:")
        lines.extend(f"- {point}" for point in key_points)

    participants = extract_participants(record.messages)
    if participants:
        lines.append(f"Participants: {', '.join(participants)}")

    time_references = extract_time_references(record.messages)
    if time_references:
        lines.append(f"Times mentioned: {', '.join(time_references)}")

    last_exchange = record.messages[-2:]
    if last_exchange:
        lines.append("Last exchange:")
        lines.extend(
            f"{_role_prefix(message)}: {truncate(message.content, SUMMARY_TRUNCATE_CHARS)}"
            for message in last_exchange
        )
    return "\n".join(lines)


def select_hybrid_strategy(message_count: int, token_count: int, can_summarize: bool = True) -> str:
    if message_count <= 5 or token_count <= 500:
        return SIMPLE
    if token_count > 2000 and can_summarize:
        return AI_SUMMARIZATION
    return SIMPLE


def retention_plan(message_count: int, token_count: int, compression_level: int):
    """
    Number of (recent, initial) messages to keep.

    Larger conversations and repeated compressions keep fewer recent messages.
    """
    if token_count > 3000:
        return max(4, int(message_count * 0.2)), 1
    if compression_level == 0:
        return max(6, int(message_count * 0.4)), 2
    if compression_level == 1:
        return max(5, int(message_count * 0.3)), 1
    return max(4, int(message_count * 0.25)), 1


def select_retained_messages(
    messages: List[Message],
    token_count: Optional[int] = None,
    compression_level: int = 0,
    keep_recent: Optional[int] = None,
    keep_initial: Optional[int] = None
) -> List[Message]:
    """Keep the initial anchor and the most recent messages, in their original order."""
    if token_count is None:
        token_count = count_message_tokens(messages)
    recent, initial = retention_plan(len(messages), token_count, compression_level)
    if keep_recent is not None:
        recent = keep_recent
    if keep_initial is not None:
        initial = keep_initial
    if recent + initial >= len(messages):
        return list(messages)
    return list(messages[:initial]) + list(messages[len(messages) - recent:])

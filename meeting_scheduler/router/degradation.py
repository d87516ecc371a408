"""Deterministic substitutes for cosmetic model output."""

import re
from typing import List

DEFAULT_TITLES = ["Team Sync", "Planning Session", "Project Check-in"]
DEFAULT_CHAT_REPLY = (
    "I'm here to help you schedule meetings. Tell me what the meeting is about, "
    "when it should happen and who should attend."
)

MAX_TITLE_WORDS = 6
MAX_TITLE_LENGTH = 60

_LEADING_FILLER = re.compile(
    r"^(please\s+)?((can|could) you\s+)?((schedule|book|set up|setup|create|plan|arrange)\s+)?"
    r"((an?|the)\s+)?((meeting|call|session)\s+)?((about|for|on|to discuss|regarding)\s+)?",
    re.IGNORECASE,
)
_EMAIL = re.compile(r"\S+@\S+")
_TIME_PHRASES = re.compile(
    r"\b(tomorrow|today|tonight|next week|on (monday|tuesday|wednesday|thursday|friday|saturday|sunday)|"
    r"at \d{1,2}(:\d{2})?\s*(am|pm)?|\d{1,2}(:\d{2})?\s*(am|pm))\b",
    re.IGNORECASE,
)
_TRAILING_PREPOSITION = re.compile(r"\s*\b(with|for|on|at|about|and)\s*$", re.IGNORECASE)


def _clean_purpose(purpose: str) -> str:
    text = _EMAIL.sub("", purpose or "")
    text = _TIME_PHRASES.sub("", text)
    text = _LEADING_FILLER.sub("", text.strip())
    text = re.sub(r"[^\w\s&'-]", " ", text)
    text = re.sub(r"\s+", " ", text).strip()
    while _TRAILING_PREPOSITION.search(text):
        text = _TRAILING_PREPOSITION.sub("", text).strip()
    return text


def _truncate_words(text: str) -> str:
    words = text.split()[:MAX_TITLE_WORDS]
    title = " ".join(words)
    if len(title) > MAX_TITLE_LENGTH:
        title = title[:MAX_TITLE_LENGTH].rsplit(" ", 1)[0]
    return title


def _title_case(text: str) -> str:
    return " ".join(word if word.isupper() else word.capitalize() for word in text.split())


def _name_from_email(email: str) -> str:
    local_part = email.split("@")[0]
    first = re.split(r"[._+-]", local_part)[0]
    return first.capitalize() if first else ""


def rule_based_titles(purpose: str, participants: List[str] = None) -> List[str]:
    """Build up to three titles from the purpose text. Never returns an empty list."""
    base = _title_case(_truncate_words(_clean_purpose(purpose)))
    if not base:
        return list(DEFAULT_TITLES)

    suggestions = [base]
    if len(base.split()) < MAX_TITLE_WORDS:
        suggestions.append(f"{base} Sync")
    names = [name for name in (_name_from_email(p) for p in participants or []) if name]
    if names:
        suggestions.append(_truncate_words(f"{base} with {names[0]}"))
    else:
        suggestions.append(_truncate_words(f"{base} Review"))

    unique = []
    for suggestion in suggestions:
        if suggestion not in unique:
            unique.append(suggestion)
    return unique


def rule_based_purpose(purpose: str) -> str:
    """Tidy the purpose text without changing its meaning."""
    text = re.sub(r"\s+", " ", (purpose or "").strip())
    if not text:
        return text
    text = text[0].upper() + text[1:]
    if text[-1] not in ".!?":
        text += "."
    return text

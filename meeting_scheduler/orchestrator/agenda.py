"""Agenda fallback, formatting and approval checks."""

import re
from typing import List, Optional, Tuple

MIN_AGENDA_LENGTH = 50
_TIME_ALLOCATION = re.compile(r"\d+\s*min", re.IGNORECASE)

AGENDA_EMPTY = "Agenda cannot be empty"
AGENDA_TOO_SHORT = f"Agenda must be at least {MIN_AGENDA_LENGTH} characters long"
AGENDA_NO_TIME_ALLOCATIONS = "Agenda must include time allocations (e.g. '10 min')"


def fallback_agenda_items(title: Optional[str]) -> List[Tuple[str, int]]:
    """Template agenda used when generation is unavailable."""
    return [
        ("Welcome and Introductions", 5),
        (title or "Main Discussion", 30),
        ("Action Items and Next Steps", 10),
        ("Wrap-up", 5),
    ]


def format_agenda(title: Optional[str], items: List[Tuple[str, int]]) -> str:
    """Markdown agenda with per-item durations and a total."""
    lines = [f"## {title or 'Meeting'} Agenda", ""]
    for index, (topic, minutes) in enumerate(items, start=1):
        lines.append(f"{index}. {topic} ({minutes} min)")
    lines.append("")
    lines.append(f"**Total: {sum(minutes for _, minutes in items)} min**")
    return "\n".join(lines)


def build_fallback_agenda(title: Optional[str]) -> str:
    return format_agenda(title, fallback_agenda_items(title))


def validate_agenda_for_approval(agenda: Optional[str]) -> List[str]:
    """Errors preventing approval of an agenda; empty when it can be approved."""
    text = (agenda or "").strip()
    if not text:
        return [AGENDA_EMPTY]
    errors = []
    if len(text) < MIN_AGENDA_LENGTH:
        errors.append(AGENDA_TOO_SHORT)
    if not _TIME_ALLOCATION.search(text):
        errors.append(AGENDA_NO_TIME_ALLOCATIONS)
    return errors

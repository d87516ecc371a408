"""Lenient parsing of structured data embedded in model output."""

import json
import re
from typing import Any, Optional


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences around a model response."""
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def parse_json_response(text: Optional[str]) -> Optional[Any]:
    """
    Parse JSON out of free model text.

    Malformed output is expected, so this never raises: it returns None when
    no JSON object or array can be recovered.
    """
    if not text:
        return None

    cleaned = strip_code_fences(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # Fall back to the outermost object or array in the text
    for pattern in (r'\{.*\}', r'\[.*\]'):
        match = re.search(pattern, cleaned, re.DOTALL)
        if not match:
            continue
        try:
            return json.loads(match.group())
        except json.JSONDecodeError:
            continue
    return None


def coerce_confidence(value: Any) -> float:
    """Clamp a model-reported confidence into [0, 1]; junk becomes 0."""
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence != confidence:  # NaN
        return 0.0
    return max(0.0, min(1.0, confidence))

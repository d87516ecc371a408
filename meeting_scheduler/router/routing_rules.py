"""Static routing table mapping logical operations to model backends."""

from typing import Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict

from meeting_scheduler.config import Settings, settings


GEMINI = "gemini"
MISTRAL = "mistral"

EXTRACT_MEETING_INTENT = "extract_meeting_intent"
GENERATE_MEETING_TITLES = "generate_meeting_titles"
GENERATE_MEETING_AGENDA = "generate_meeting_agenda"
ENHANCE_PURPOSE_WORDING = "enhance_purpose_wording"
GENERATE_CHAT_RESPONSE = "generate_chat_response"
VERIFY_ATTENDEES = "verify_attendees"
EXTRACT_TIME = "extract_time"
SUMMARIZE_CONVERSATION = "summarize_conversation"

BLOCKING = "blocking"
COSMETIC = "cosmetic"

MIN_TIMEOUT_MS = 1000
MAX_TIMEOUT_MS = 300000


class RoutingRule(BaseModel):
    """Backend selection, timeout and failure policy for one operation."""
    model_config = ConfigDict(frozen=True)

    operation: str
    primary_backend: str
    fallback_backend: str
    timeout_ms: int
    cost_weight: float = 1.0
    severity: Literal["blocking", "cosmetic"] = BLOCKING
    enable_fallback: bool = True
    temperature: float = 0.3


DEFAULT_ROUTING_RULES = (
    RoutingRule(operation=EXTRACT_MEETING_INTENT, primary_backend=GEMINI, fallback_backend=MISTRAL,
                timeout_ms=30000, cost_weight=1.0, severity=BLOCKING, temperature=0.0),
    RoutingRule(operation=GENERATE_MEETING_TITLES, primary_backend=GEMINI, fallback_backend=MISTRAL,
                timeout_ms=20000, cost_weight=0.5, severity=COSMETIC, temperature=0.2),
    RoutingRule(operation=GENERATE_MEETING_AGENDA, primary_backend=GEMINI, fallback_backend=MISTRAL,
                timeout_ms=45000, cost_weight=1.5, severity=BLOCKING, temperature=0.2),
    RoutingRule(operation=ENHANCE_PURPOSE_WORDING, primary_backend=GEMINI, fallback_backend=MISTRAL,
                timeout_ms=25000, cost_weight=0.5, severity=COSMETIC, temperature=0.2),
    RoutingRule(operation=GENERATE_CHAT_RESPONSE, primary_backend=MISTRAL, fallback_backend=GEMINI,
                timeout_ms=15000, cost_weight=0.3, severity=COSMETIC, temperature=0.7),
    RoutingRule(operation=VERIFY_ATTENDEES, primary_backend=MISTRAL, fallback_backend=GEMINI,
                timeout_ms=10000, cost_weight=0.2, severity=BLOCKING, temperature=0.0),
    RoutingRule(operation=EXTRACT_TIME, primary_backend=MISTRAL, fallback_backend=GEMINI,
                timeout_ms=15000, cost_weight=0.3, severity=BLOCKING, temperature=0.0),
    RoutingRule(operation=SUMMARIZE_CONVERSATION, primary_backend=GEMINI, fallback_backend=MISTRAL,
                timeout_ms=30000, cost_weight=0.8, severity=BLOCKING, temperature=0.1),
)


def validate_routing_rule(rule: RoutingRule) -> List[str]:
    """Return configuration errors for a rule (empty when valid)."""
    errors = []
    if rule.primary_backend == rule.fallback_backend:
        errors.append(f"{rule.operation}: primary and fallback backends must differ")
    if not MIN_TIMEOUT_MS <= rule.timeout_ms <= MAX_TIMEOUT_MS:
        errors.append(
            f"{rule.operation}: timeout must be between {MIN_TIMEOUT_MS} and {MAX_TIMEOUT_MS} ms"
        )
    if rule.cost_weight < 0:
        errors.append(f"{rule.operation}: cost weight cannot be negative")
    return errors


def load_routing_rules(
    rules: Optional[Iterable[RoutingRule]] = None,
    config: Optional[Settings] = None
) -> Dict[str, RoutingRule]:
    """
    Build the read-only routing table, applying environment overrides.

    Raises:
        ValueError: if any rule is invalid
    """
    config = config or settings
    table: Dict[str, RoutingRule] = {}
    errors: List[str] = []

    for rule in rules or DEFAULT_ROUTING_RULES:
        if not config.ai_router_enable_fallback:
            rule = rule.model_copy(update={"enable_fallback": False})
        errors.extend(validate_routing_rule(rule))
        table[rule.operation] = rule

    if errors:
        raise ValueError("Invalid routing configuration: " + "; ".join(errors))
    return table


def default_rule_for(operation: str, config: Optional[Settings] = None) -> RoutingRule:
    """Rule used for operations missing from the table."""
    config = config or settings
    return RoutingRule(
        operation=operation,
        primary_backend=GEMINI,
        fallback_backend=MISTRAL,
        timeout_ms=config.ai_router_default_timeout,
        enable_fallback=config.ai_router_enable_fallback,
    )

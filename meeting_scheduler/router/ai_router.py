"""AI router: dispatches logical operations to model backends with retry and fallback."""

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel

from meeting_scheduler.config import settings
from meeting_scheduler.llm.errors import (
    BackendError,
    CIRCUIT_OPEN,
    MODEL_UNAVAILABLE,
    classify_error,
    sanitize_error_message,
)
from meeting_scheduler.router.routing_rules import RoutingRule, default_rule_for, load_routing_rules
from meeting_scheduler.utils.date_utils import utc_now
from meeting_scheduler.utils.logging_utils import StructuredLogger


class ModelBackend(Protocol):
    """A language-model service treated as opaque request/response."""

    name: str

    async def invoke(
        self,
        operation: str,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.3,
        response_format: str = "text"
    ) -> str: ...


class RouteResult(BaseModel):
    """Successful routed call."""
    operation: str
    text: str
    backend: str
    fallback_used: bool = False
    attempts: int = 1
    latency_ms: float = 0.0


class RoutingError(Exception):
    """Every backend allowed for an operation failed."""

    def __init__(
        self,
        operation: str,
        message: str,
        code: str,
        retryable: bool = False,
        fallback_used: bool = False,
        errors: Optional[List[BackendError]] = None
    ):
        super().__init__(message)
        self.operation = operation
        self.message = message
        self.code = code
        self.retryable = retryable
        self.fallback_used = fallback_used
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": {
                "type": self.code.lower(),
                "message": self.message,
                "code": self.code,
                "retryable": self.retryable,
                "fallback_used": self.fallback_used,
                "timestamp": utc_now().isoformat(),
            },
        }


class CircuitBreaker:
    """Per-backend breaker: opens after consecutive failures, half-opens after a cool-down."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, threshold: int, reset_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.threshold = threshold
        self.reset_seconds = reset_seconds
        self.clock = clock
        self.failures = 0
        self.opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self.opened_at is None:
            return self.CLOSED
        if self.clock() - self.opened_at >= self.reset_seconds:
            return self.HALF_OPEN
        return self.OPEN

    def allow_request(self) -> bool:
        return self.state != self.OPEN

    def record_success(self) -> None:
        self.failures = 0
        self.opened_at = None

    def record_failure(self) -> None:
        self.failures += 1
        if self.state == self.HALF_OPEN or self.failures >= self.threshold:
            self.opened_at = self.clock()


def _empty_stats() -> Dict[str, float]:
    return {"requests": 0, "successes": 0, "failures": 0, "fallbacks": 0, "degraded": 0, "total_latency_ms": 0.0}


class AIRouter:
    """
    Routes logical operations to a primary backend, then a fallback backend.

    Retryable failures are retried per backend with exponential backoff and
    jitter. Each attempt is bounded by the rule's timeout. When every allowed
    backend fails a RoutingError is raised; whether that error reaches the
    user is decided by the caller based on the rule's severity.
    """

    def __init__(
        self,
        backends: Dict[str, ModelBackend],
        rules: Optional[Dict[str, RoutingRule]] = None,
        max_retries: Optional[int] = None,
        fallback_max_retries: Optional[int] = None,
        base_delay_ms: Optional[int] = None,
        max_delay_ms: Optional[int] = None,
        circuit_threshold: Optional[int] = None,
        circuit_reset_seconds: Optional[float] = None,
        enable_logging: Optional[bool] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        self.backends = backends
        self.rules = rules if rules is not None else load_routing_rules()
        self.max_retries = max_retries or settings.ai_router_max_retries
        self.fallback_max_retries = fallback_max_retries or settings.ai_router_fallback_max_retries
        self.base_delay_ms = base_delay_ms if base_delay_ms is not None else settings.ai_router_base_delay_ms
        self.max_delay_ms = max_delay_ms if max_delay_ms is not None else settings.ai_router_max_delay_ms
        self.enable_logging = settings.ai_router_enable_logging if enable_logging is None else enable_logging
        self.sleep = sleep
        self.clock = clock
        threshold = circuit_threshold or settings.ai_router_circuit_threshold
        reset_seconds = circuit_reset_seconds or settings.ai_router_circuit_reset_seconds
        self.circuits = {name: CircuitBreaker(threshold, reset_seconds, clock) for name in backends}
        self.backend_stats: Dict[str, Dict[str, float]] = {name: _empty_stats() for name in backends}
        self.operation_stats: Dict[str, Dict[str, float]] = {}
        self.logger = StructuredLogger(__name__)

    def get_rule(self, operation: str) -> RoutingRule:
        return self.rules.get(operation) or default_rule_for(operation)

    async def route(
        self,
        operation: str,
        prompt: str,
        system_prompt: Optional[str] = None,
        response_format: str = "text",
        correlation_id: Optional[str] = None
    ) -> RouteResult:
        """
        Run an operation against its primary backend, falling back on failure.

        Raises:
            RoutingError: when the primary (and the fallback, if enabled) failed
        """
        rule = self.get_rule(operation)
        op_stats = self.operation_stats.setdefault(operation, _empty_stats())
        op_stats["requests"] += 1
        started = self.clock()
        errors: List[BackendError] = []

        plan = [(rule.primary_backend, self.max_retries, False)]
        if rule.enable_fallback:
            plan.append((rule.fallback_backend, self.fallback_max_retries, True))

        for backend_name, max_attempts, is_fallback in plan:
            if is_fallback:
                op_stats["fallbacks"] += 1
                self._log("warning", "Falling back to secondary backend", correlation_id,
                          operation=operation, backend=backend_name,
                          primary_error=errors[-1].code if errors else None)
            try:
                text, attempts = await self._call_with_retry(
                    backend_name, rule, prompt, system_prompt, response_format, max_attempts, correlation_id
                )
            except BackendError as e:
                errors.append(e)
                continue

            latency_ms = (self.clock() - started) * 1000
            op_stats["successes"] += 1
            op_stats["total_latency_ms"] += latency_ms
            return RouteResult(
                operation=operation,
                text=text,
                backend=backend_name,
                fallback_used=is_fallback,
                attempts=attempts,
                latency_ms=latency_ms,
            )

        op_stats["failures"] += 1
        last_error = errors[-1]
        summary = "; ".join(f"{e.backend or 'backend'}: {e.message}" for e in errors)
        message = sanitize_error_message(f"All backends failed for {operation}: {summary}")
        self._log("error", "Routing failed", correlation_id, operation=operation, error_code=last_error.code)
        raise RoutingError(
            operation,
            message,
            code=last_error.code,
            retryable=last_error.retryable,
            fallback_used=len(errors) > 1,
            errors=errors,
        )

    async def _call_with_retry(
        self,
        backend_name: str,
        rule: RoutingRule,
        prompt: str,
        system_prompt: Optional[str],
        response_format: str,
        max_attempts: int,
        correlation_id: Optional[str]
    ):
        backend = self.backends.get(backend_name)
        if backend is None:
            raise BackendError(f"Backend '{backend_name}' is not configured", MODEL_UNAVAILABLE, backend_name)

        circuit = self.circuits[backend_name]
        stats = self.backend_stats[backend_name]
        timeout_seconds = rule.timeout_ms / 1000

        for attempt in range(1, max_attempts + 1):
            if not circuit.allow_request():
                raise BackendError(f"Circuit open for backend '{backend_name}'", CIRCUIT_OPEN, backend_name)

            stats["requests"] += 1
            started = self.clock()
            try:
                text = await asyncio.wait_for(
                    backend.invoke(
                        rule.operation,
                        prompt,
                        system_prompt=system_prompt,
                        temperature=rule.temperature,
                        response_format=response_format,
                    ),
                    timeout=timeout_seconds,
                )
            except Exception as e:
                error = classify_error(e, backend=backend_name)
                stats["failures"] += 1
                circuit.record_failure()
                self._log("warning", "Backend attempt failed", correlation_id,
                          operation=rule.operation, backend=backend_name, attempt=attempt,
                          error_code=error.code, retryable=error.retryable)
                if not error.retryable or attempt >= max_attempts:
                    raise error
                await self.sleep(self._backoff_delay(attempt, error))
                continue

            stats["successes"] += 1
            stats["total_latency_ms"] += (self.clock() - started) * 1000
            circuit.record_success()
            self._log("debug", "Backend attempt succeeded", correlation_id,
                      operation=rule.operation, backend=backend_name, attempt=attempt)
            return text, attempt

        # max_attempts < 1
        raise BackendError(f"No attempts allowed for backend '{backend_name}'", MODEL_UNAVAILABLE, backend_name)

    def _backoff_delay(self, attempt: int, error: BackendError) -> float:
        """Seconds to wait before the next attempt."""
        if error.retry_after:
            return min(error.retry_after, self.max_delay_ms / 1000)
        delay_ms = self.base_delay_ms * (2 ** (attempt - 1)) + random.uniform(0, 1000)
        return min(delay_ms, self.max_delay_ms) / 1000

    def record_degradation(self, operation: str) -> None:
        """Count a rule-based substitution for a cosmetic operation."""
        self.operation_stats.setdefault(operation, _empty_stats())["degraded"] += 1

    def get_usage_stats(self) -> Dict[str, Any]:
        def with_average(stats: Dict[str, float]) -> Dict[str, Any]:
            successes = stats["successes"]
            average = stats["total_latency_ms"] / successes if successes else 0.0
            return {**stats, "average_latency_ms": round(average, 2)}

        return {
            "backends": {name: with_average(stats) for name, stats in self.backend_stats.items()},
            "operations": {name: with_average(stats) for name, stats in self.operation_stats.items()},
        }

    def get_service_status(self) -> Dict[str, Any]:
        """healthy when every circuit is closed, unhealthy when none accepts requests."""
        circuit_states = {name: circuit.state for name, circuit in self.circuits.items()}
        available = [name for name, circuit in self.circuits.items() if circuit.allow_request()]
        if not available:
            status = "unhealthy"
        elif all(state == CircuitBreaker.CLOSED for state in circuit_states.values()):
            status = "healthy"
        else:
            status = "degraded"
        return {
            "status": status,
            "backends": circuit_states,
            "available_backends": available,
            "operations": sorted(self.rules),
        }

    def _log(self, level: str, message: str, correlation_id: Optional[str], **kwargs) -> None:
        if self.enable_logging:
            getattr(self.logger, level)(message, correlation_id=correlation_id, **kwargs)

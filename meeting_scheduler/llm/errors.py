"""Backend error taxonomy and classification."""

import asyncio
import re
from typing import Optional

import httpx


RATE_LIMIT = "rate_limit"
TIMEOUT = "timeout"
SERVICE_UNAVAILABLE = "service_unavailable"
NETWORK_ERROR = "network_error"
MODEL_UNAVAILABLE = "model_unavailable"
AUTHENTICATION = "authentication"
INVALID_REQUEST = "invalid_request"
CONTENT_SAFETY = "content_safety"
INVALID_RESPONSE = "invalid_response"
CIRCUIT_OPEN = "circuit_open"
UNKNOWN = "unknown"

RETRYABLE_ERROR_TYPES = frozenset({
    RATE_LIMIT,
    TIMEOUT,
    SERVICE_UNAVAILABLE,
    NETWORK_ERROR,
    MODEL_UNAVAILABLE,
})


class BackendError(Exception):
    """A categorized failure from a model backend."""

    def __init__(
        self,
        message: str,
        error_type: str = UNKNOWN,
        backend: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.backend = backend
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return self.error_type in RETRYABLE_ERROR_TYPES

    @property
    def code(self) -> str:
        return self.error_type.upper()


_SENSITIVE_PATTERNS = [
    (re.compile(r"(api[_-]?key\s*[=:]\s*)[^\s&,;\"']+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(key=)[^\s&,;\"']+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(token\s*[=:]\s*)[^\s&,;\"']+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(authorization\s*[=:]\s*)(bearer\s+)?[^\s&,;\"']+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"(bearer\s+)[A-Za-z0-9._\-]+", re.IGNORECASE), r"\1[REDACTED]"),
]


def sanitize_error_message(message: str) -> str:
    """Redact credentials that upstream libraries sometimes echo in error text."""
    sanitized = message or ""
    for pattern, replacement in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)
    return sanitized


def _error_type_for_status(status_code: int) -> str:
    if status_code == 429:
        return RATE_LIMIT
    if status_code in (401, 403):
        return AUTHENTICATION
    if status_code == 404:
        return MODEL_UNAVAILABLE
    if status_code == 408:
        return TIMEOUT
    if status_code in (400, 413, 422):
        return INVALID_REQUEST
    if status_code >= 500:
        return SERVICE_UNAVAILABLE
    return UNKNOWN


def _error_type_for_message(error_str: str) -> str:
    lowered = error_str.lower()
    if "429" in lowered or "quota" in lowered or "rate limit" in lowered or "resource exhausted" in lowered:
        return RATE_LIMIT
    if "timeout" in lowered or "timed out" in lowered or "deadline" in lowered:
        return TIMEOUT
    if "safety" in lowered or "blocked" in lowered:
        return CONTENT_SAFETY
    if "api key" in lowered or "unauthorized" in lowered or "unauthenticated" in lowered or "permission" in lowered:
        return AUTHENTICATION
    if "503" in lowered or "unavailable" in lowered or "overloaded" in lowered or "500" in lowered:
        return SERVICE_UNAVAILABLE
    if "connection" in lowered or "network" in lowered:
        return NETWORK_ERROR
    if "model" in lowered and "not found" in lowered:
        return MODEL_UNAVAILABLE
    if "invalid" in lowered or "400" in lowered:
        return INVALID_REQUEST
    return UNKNOWN


def _parse_retry_after(error_str: str, header_value: Optional[str] = None) -> Optional[float]:
    if header_value:
        try:
            return float(header_value)
        except ValueError:
            pass
    # Gemini quota errors carry "retry_delay { seconds: N }"
    delay_match = re.search(r'seconds:\s*(\d+)', error_str)
    if delay_match:
        return float(delay_match.group(1))
    return None


def classify_error(error: BaseException, backend: Optional[str] = None) -> BackendError:
    """Map any exception raised while calling a backend onto a BackendError."""
    if isinstance(error, BackendError):
        if backend and not error.backend:
            error.backend = backend
        return error

    error_str = sanitize_error_message(str(error)) or type(error).__name__

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return BackendError(f"Request timed out: {error_str}", TIMEOUT, backend)

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        return BackendError(
            error_str,
            _error_type_for_status(status_code),
            backend,
            status_code=status_code,
            retry_after=_parse_retry_after(error_str, error.response.headers.get("retry-after")),
        )

    if isinstance(error, httpx.TransportError):
        return BackendError(error_str, NETWORK_ERROR, backend)

    # google.api_core exceptions expose the HTTP status as an int ``code``
    status_code = getattr(error, "code", None)
    if isinstance(status_code, int) and status_code >= 400:
        return BackendError(
            error_str,
            _error_type_for_status(status_code),
            backend,
            status_code=status_code,
            retry_after=_parse_retry_after(error_str),
        )

    error_type = _error_type_for_message(error_str)
    return BackendError(
        error_str,
        error_type,
        backend,
        retry_after=_parse_retry_after(error_str) if error_type == RATE_LIMIT else None,
    )

"""Structured logging utilities for the scheduler."""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional
from functools import wraps

from meeting_scheduler.config import settings


class StructuredLogger:
    """Structured logger that outputs JSON logs."""

    def __init__(self, name: str = "meeting_scheduler"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(JSONFormatter())
            self.logger.addHandler(handler)

    def _log(self, level: int, message: str, correlation_id: Optional[str] = None, **kwargs):
        """Internal logging method with structured data."""
        if not self.logger.isEnabledFor(level):
            return
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": logging.getLevelName(level),
            "logger": self.logger.name,
            "message": message,
            "correlation_id": correlation_id,
            **kwargs
        }
        self.logger.log(level, json.dumps(log_data, default=str))

    def info(self, message: str, correlation_id: Optional[str] = None, **kwargs):
        """Log INFO level message."""
        self._log(logging.INFO, message, correlation_id, **kwargs)

    def debug(self, message: str, correlation_id: Optional[str] = None, **kwargs):
        """Log DEBUG level message."""
        self._log(logging.DEBUG, message, correlation_id, **kwargs)

    def error(self, message: str, correlation_id: Optional[str] = None, **kwargs):
        """Log ERROR level message."""
        self._log(logging.ERROR, message, correlation_id, **kwargs)

    def warning(self, message: str, correlation_id: Optional[str] = None, **kwargs):
        """Log WARNING level message."""
        self._log(logging.WARNING, message, correlation_id, **kwargs)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record):
        """Format log record as JSON."""
        # Messages from StructuredLogger are already JSON
        if isinstance(record.msg, str) and record.msg.startswith('{'):
            return record.msg

        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if hasattr(record, 'correlation_id'):
            log_data["correlation_id"] = record.correlation_id
        if hasattr(record, 'conversation_id'):
            log_data["conversation_id"] = record.conversation_id
        if hasattr(record, 'duration_ms'):
            log_data["duration_ms"] = record.duration_ms

        return json.dumps(log_data, default=str)


def generate_correlation_id() -> str:
    """Generate a unique correlation ID for request tracking."""
    return str(uuid.uuid4())


def _describe_result(result) -> Optional[dict]:
    if isinstance(result, dict):
        return {k: type(v).__name__ for k, v in result.items()}
    if hasattr(result, "model_fields"):
        return {"model": type(result).__name__}
    return None


class _StepTimer:
    """Start/finish bookkeeping shared by the sync and async step wrappers."""

    def __init__(self, step_name: str, kwargs: dict):
        self.step_name = step_name
        self.correlation_id = kwargs.get('correlation_id') or generate_correlation_id()
        self.context = {"conversation_id": kwargs["conversation_id"]} if kwargs.get('conversation_id') else {}
        self.logger = StructuredLogger()
        self.started = datetime.now(timezone.utc)
        self.logger.debug(
            f"Pipeline step started: {step_name}",
            correlation_id=self.correlation_id,
            step=step_name,
            **self.context
        )

    def _elapsed_ms(self) -> float:
        return (datetime.now(timezone.utc) - self.started).total_seconds() * 1000

    def completed(self, result):
        self.logger.info(
            f"Pipeline step completed: {self.step_name}",
            correlation_id=self.correlation_id,
            step=self.step_name,
            duration_ms=self._elapsed_ms(),
            data_shape=_describe_result(result),
            **self.context
        )
        return result

    def failed(self, error: Exception) -> None:
        self.logger.error(
            f"Pipeline step failed: {self.step_name}",
            correlation_id=self.correlation_id,
            step=self.step_name,
            duration_ms=self._elapsed_ms(),
            error=str(error),
            error_type=type(error).__name__,
            **self.context
        )


def log_pipeline_step(func):
    """Decorator to log pipeline step execution with timing."""
    @wraps(func)
    async def async_wrapper(*args, **kwargs):
        timer = _StepTimer(func.__name__, kwargs)
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            timer.failed(e)
            raise
        return timer.completed(result)

    @wraps(func)
    def sync_wrapper(*args, **kwargs):
        timer = _StepTimer(func.__name__, kwargs)
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            timer.failed(e)
            raise
        return timer.completed(result)

    if asyncio.iscoroutinefunction(func):
        return async_wrapper
    return sync_wrapper

"""
CallSync - Structured Logging

Provides structured JSON logging with context injection for correlation IDs,
call session IDs, and caller identities. Phone numbers and credentials are
automatically masked.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional, TextIO


# =============================================================================
# Context Variables
# =============================================================================

# Request-level context
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
session_id_var: ContextVar[Optional[str]] = ContextVar('session_id', default=None)
caller_var: ContextVar[Optional[str]] = ContextVar('caller', default=None)


# =============================================================================
# Masking Utilities
# =============================================================================

def mask_session_id(sid: Optional[str]) -> Optional[str]:
    """Mask call session ID to first 8 characters."""
    if not sid:
        return None
    return sid[:8] if len(sid) > 8 else sid


def mask_phone_number(number: Optional[str], show_last_digits: int = 2) -> str:
    """
    Mask a phone number for logging.

    Examples:
        +1 (415) 555-1234 → ***34
        None              → unknown
    """
    if not number:
        return "unknown"

    digits = re.sub(r'\D', '', str(number))
    if len(digits) < show_last_digits:
        return "***"
    return f"***{digits[-show_last_digits:]}"


SENSITIVE_KEYS = frozenset({
    "phone", "phone_number", "destination", "from", "to", "number",
    "password", "token", "secret", "key", "api_key", "authorization",
})

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "openai")


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(lowered == s or lowered.endswith(f"_{s}") for s in SENSITIVE_KEYS)


def mask_sensitive_data(data: Any) -> Any:
    """
    Recursively mask sensitive fields in dicts and lists.

    String values under a sensitive key keep their last two characters;
    anything else under such a key becomes ``[REDACTED]``.
    """
    if isinstance(data, list):
        return [mask_sensitive_data(item) for item in data]
    if not isinstance(data, dict):
        return data

    masked = {}
    for key, value in data.items():
        if _is_sensitive(str(key)):
            if isinstance(value, str) and value:
                masked[key] = mask_phone_number(value) if any(c.isdigit() for c in value) else "***"
            else:
                masked[key] = "[REDACTED]"
        else:
            masked[key] = mask_sensitive_data(value)
    return masked


def current_context() -> dict[str, str]:
    """Log context for the running task, with the session id masked."""
    context = {}
    correlation_id = correlation_id_var.get()
    if correlation_id:
        context["correlation_id"] = correlation_id
    session_id = session_id_var.get()
    if session_id:
        context["session_id"] = mask_session_id(session_id)
    caller = caller_var.get()
    if caller:
        context["caller"] = caller
    return context


# =============================================================================
# Formatters
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """
    One JSON object per record.

    {"timestamp", "level", "logger", "message",
     "correlation_id"?, "session_id"?, "caller"?, "data"?, "exception"?}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(current_context())

        data = getattr(record, "data", None)
        if data:
            entry["data"] = mask_sensitive_data(data)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Single-line development format: time | level | logger [context] | message."""

    _CONTEXT_LABELS = (("correlation_id", "req"), ("session_id", "call"), ("caller", "from"))

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%H:%M:%S")
        context = current_context()
        if context.get("correlation_id"):
            context["correlation_id"] = context["correlation_id"][:8]

        labels = [f"{label}={context[name]}" for name, label in self._CONTEXT_LABELS if name in context]
        scope = f" [{' '.join(labels)}]" if labels else ""

        line = f"{timestamp} {record.levelname:<7} {record.name}{scope}: {record.getMessage()}"
        data = getattr(record, "data", None)
        if data:
            line += f" {mask_sensitive_data(data)}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_structured_logging(
    level: str = "INFO",
    json_format: bool = False,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Install a single root handler.

    Args:
        level: Root log level name
        json_format: JSON lines (production) instead of the human format
        stream: Output stream, stdout by default
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))


# =============================================================================
# Context
# =============================================================================

class LogContext:
    """
    Bind correlation id, call session id and caller for a block.

    Usage:
        with LogContext(session_id=call_id, caller=ip):
            logger.info("Polling call")
    """

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        session_id: Optional[str] = None,
        caller: Optional[str] = None,
    ):
        self._bindings = [
            (var, value)
            for var, value in (
                (correlation_id_var, correlation_id),
                (session_id_var, session_id),
                (caller_var, caller),
            )
            if value
        ]
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        self._tokens = [(var, var.set(value)) for var, value in self._bindings]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)
        return False


# =============================================================================
# Structured Logger
# =============================================================================

class StructuredLogger(logging.LoggerAdapter):
    """
    Logger adapter that accepts a ``data`` mapping per call.

    The mapping is attached to the record and masked by the formatters.

    Usage:
        logger = get_logger(__name__)
        logger.info("Placing call", data={"phone_number": number, "voice": "maya"})
    """

    def __init__(self, name: str):
        super().__init__(logging.getLogger(name), {})

    def process(self, msg, kwargs):
        data = kwargs.pop("data", None)
        if data:
            kwargs["extra"] = {**kwargs.get("extra", {}), "data": data}
        return msg, kwargs


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(name)

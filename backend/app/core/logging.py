"""
SilentLine - Structured Logging

Provides structured JSON logging with context injection for call IDs and
connection roles. Caller location and relay credentials are masked.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional


# =============================================================================
# Context Variables
# =============================================================================

call_id_var: ContextVar[Optional[str]] = ContextVar('call_id', default=None)
role_var: ContextVar[Optional[str]] = ContextVar('role', default=None)


# =============================================================================
# Masking Utilities
# =============================================================================

SENSITIVE_KEYS = {
    'lat', 'lng', 'latitude', 'longitude', 'location',
    'password', 'token', 'secret', 'credential', 'key',
}


def mask_call_id(cid: Optional[str]) -> Optional[str]:
    """Mask call ID to last 4 characters."""
    if not cid:
        return None
    return f"***{cid[-4:]}" if len(cid) > 4 else "***"


def mask_sensitive_data(data: dict) -> dict:
    """
    Recursively mask sensitive fields in a dictionary.

    Caller coordinates are as identifying as a phone number, so they are
    redacted along with tokens and secrets.
    """
    masked = {}
    for key, value in data.items():
        key_lower = key.lower()

        if any(s == key_lower or key_lower.endswith(f"_{s}") for s in SENSITIVE_KEYS):
            masked[key] = "[REDACTED]"
        elif isinstance(value, dict):
            masked[key] = mask_sensitive_data(value)
        else:
            masked[key] = value

    return masked


# =============================================================================
# Formatters
# =============================================================================

class StructuredFormatter(logging.Formatter):
    """
    JSON formatter that injects context variables and masks sensitive data.

    Output format:
    {
        "timestamp": "2024-11-30T00:00:00.000Z",
        "level": "INFO",
        "logger": "app.core.registry",
        "call_id": "***ab12",
        "role": "caller",
        "message": "Human-readable message",
        "data": { ... }
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        call_id = call_id_var.get()
        if call_id:
            log_entry["call_id"] = mask_call_id(call_id)

        role = role_var.get()
        if role:
            log_entry["role"] = role

        if hasattr(record, 'data') and record.data:
            log_entry["data"] = mask_sensitive_data(record.data)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter for development.
    Includes timestamp, level, logger, and message with context.
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        context_parts = []

        call_id = call_id_var.get()
        if call_id:
            context_parts.append(f"call={mask_call_id(call_id)}")

        role = role_var.get()
        if role:
            context_parts.append(f"role={role}")

        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""

        message = f"{timestamp} | {record.levelname:<8} | {record.name}{context_str} | {record.getMessage()}"

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


# =============================================================================
# Logger Setup
# =============================================================================

def setup_structured_logging(
    level: str = "INFO",
    json_format: bool = False,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production, False for development)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter())

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("watchfiles").setLevel(logging.WARNING)


# =============================================================================
# Context Managers
# =============================================================================

class LogContext:
    """
    Context manager for setting log context variables.

    Usage:
        with LogContext(call_id="c1", role="dispatcher"):
            logger.info("Joining call")
    """

    def __init__(
        self,
        call_id: Optional[str] = None,
        role: Optional[str] = None,
    ):
        self._call_id = call_id
        self._role = role
        self._tokens = []

    def __enter__(self):
        if self._call_id:
            self._tokens.append((call_id_var, call_id_var.set(self._call_id)))
        if self._role:
            self._tokens.append((role_var, role_var.set(self._role)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False

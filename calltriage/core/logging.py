"""
CallTriage - Structured Logging

Structured JSON logging with context injection for correlation IDs, tenant
IDs and call IDs. Phone numbers and secrets in structured payloads are masked
before they reach a handler.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional


# =============================================================================
# Context Variables
# =============================================================================

correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar('tenant_id', default=None)
call_id_var: ContextVar[Optional[str]] = ContextVar('call_id', default=None)


# =============================================================================
# Masking Utilities
# =============================================================================

def mask_call_id(cid: Optional[str]) -> Optional[str]:
    """Mask call ID to last 4 characters."""
    if not cid:
        return None
    return f"***{cid[-4:]}" if len(cid) > 4 else "***"


_SENSITIVE_KEYS = {
    'phone', 'phone_number', 'phonenumber', 'from', 'to', 'caller', 'callee',
    'from_number', 'to_number', 'password', 'token', 'secret', 'signature',
    'address',
}


def mask_sensitive_data(data: dict) -> dict:
    """
    Recursively mask sensitive fields in a dictionary.

    Sensitive fields: phone, from, to, caller, secret, signature, address, etc.
    """
    masked: dict[str, Any] = {}
    for key, value in data.items():
        key_lower = str(key).lower()

        if any(s == key_lower or key_lower.endswith(f"_{s}") for s in _SENSITIVE_KEYS):
            if isinstance(value, str):
                masked[key] = f"***{value[-2:]}" if len(value) > 2 else "***"
            else:
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
        "timestamp": "2026-01-01T00:00:00.000000Z",
        "level": "INFO",
        "logger": "calltriage.core.dispatcher",
        "correlation_id": "evt_abc123",
        "tenant_id": "acme-hvac",
        "call_id": "***1234",
        "message": "Human-readable message",
        "data": { ... }
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_entry["correlation_id"] = correlation_id

        tenant_id = tenant_id_var.get()
        if tenant_id:
            log_entry["tenant_id"] = tenant_id

        call_id = call_id_var.get()
        if call_id:
            log_entry["call_id"] = mask_call_id(call_id)

        if hasattr(record, 'event_type'):
            log_entry["event_type"] = record.event_type

        if hasattr(record, 'data') and record.data:
            log_entry["data"] = mask_sensitive_data(record.data)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter for development.
    Includes timestamp, level, logger, and message with context.
    """

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        context_parts = []

        correlation_id = correlation_id_var.get()
        if correlation_id:
            context_parts.append(f"evt={correlation_id}")

        tenant_id = tenant_id_var.get()
        if tenant_id:
            context_parts.append(f"tenant={tenant_id}")

        call_id = call_id_var.get()
        if call_id:
            context_parts.append(f"call={mask_call_id(call_id)}")

        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""

        message = f"{timestamp} | {record.levelname:<8} | {record.name}{context_str} | {record.getMessage()}"

        if hasattr(record, 'data') and record.data:
            message += f" | {json.dumps(mask_sensitive_data(record.data), default=str)}"

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
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter())

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("watchfiles").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("twilio.http_client").setLevel(logging.WARNING)


# =============================================================================
# Context Managers
# =============================================================================

class LogContext:
    """
    Context manager for setting log context variables.

    Usage:
        with LogContext(correlation_id="evt_abc123", call_id="call-789"):
            logger.info("Processing webhook")
    """

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        call_id: Optional[str] = None,
    ):
        self._values = [
            (correlation_id_var, correlation_id),
            (tenant_id_var, tenant_id),
            (call_id_var, call_id),
        ]
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        # Every var is set, even to None, so exit also undoes bind_tenant()
        for var, value in self._values:
            self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
        return False


def bind_tenant(tenant_id: Optional[str]) -> None:
    """Attach the resolved tenant to the current log context."""
    tenant_id_var.set(tenant_id)


def bind_call(call_id: Optional[str]) -> None:
    """Attach the call id to the current log context once the body is parsed."""
    call_id_var.set(call_id)


# =============================================================================
# Structured Logger
# =============================================================================

class StructuredLogger:
    """
    Logger wrapper that supports structured data.

    Usage:
        logger = StructuredLogger(__name__)
        logger.info("Alert dispatched", data={"attempts": 3})
    """

    def __init__(self, name: str):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, message: str, data: Optional[dict] = None, **kwargs):
        extra = {}
        if data:
            extra['data'] = data

        self._logger.log(level, message, extra=extra, **kwargs)

    def debug(self, message: str, data: Optional[dict] = None, **kwargs):
        self._log(logging.DEBUG, message, data, **kwargs)

    def info(self, message: str, data: Optional[dict] = None, **kwargs):
        self._log(logging.INFO, message, data, **kwargs)

    def warning(self, message: str, data: Optional[dict] = None, **kwargs):
        self._log(logging.WARNING, message, data, **kwargs)

    def error(self, message: str, data: Optional[dict] = None, **kwargs):
        self._log(logging.ERROR, message, data, **kwargs)

    def exception(self, message: str, data: Optional[dict] = None, **kwargs):
        self._log(logging.ERROR, message, data, exc_info=True, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)

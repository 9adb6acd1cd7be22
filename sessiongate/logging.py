from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation ID for per-request tracing
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


_REDACTED_KEYS = ("password", "secret", "token", "authorization", "email", "cookie")
# Identifiers that contain a redacted word but are safe to log verbatim
_SAFE_KEYS = frozenset({"token_class", "token_type", "token_id"})


def _mask(key: str, value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _mask(str(k), v) for k, v in value.items()}
    lower_key = key.lower()
    if lower_key in _SAFE_KEYS:
        return value
    if any(word in lower_key for word in _REDACTED_KEYS):
        if isinstance(value, str) and len(value) > 4:
            # Keep first/last 2 chars for debugging
            return value[:2] + "***" + value[-2:]
    return value


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that masks credentials and contact details, including nested dicts."""
    for key in list(event_dict.keys()):
        event_dict[key] = _mask(key, event_dict[key])
    return event_dict


AUDIT_EVENT = "security_event"
_AUDIT_REQUEST_FIELDS = ("session_id", "ip_address", "user_agent", "actor_role")


def _shape_audit_event(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Tag audit trail entries and flatten their metadata into ``meta_*`` fields.

    Empty request fields are dropped. Metadata never overrides a top-level field.
    """
    if event_dict.get("event") != AUDIT_EVENT:
        return event_dict
    event_dict["channel"] = "audit"
    for key in _AUDIT_REQUEST_FIELDS:
        if not event_dict.get(key):
            event_dict.pop(key, None)
    metadata = event_dict.pop("metadata", None) or {}
    for key, value in metadata.items():
        event_dict.setdefault(f"meta_{key}", value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _shape_audit_event,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Initialize logging on module import
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)

"""
Structured logging for the identity access core.

Every event is rendered as one JSON line carrying the component that emitted
it, the OpenTelemetry trace ids when a span is active, and the correlation
fields of the request being served (request id, user, provider). Values of
secret-looking keys are masked before rendering.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from opentelemetry import trace

_request_id: ContextVar[Optional[str]] = ContextVar("identity_request_id", default=None)
_user_id: ContextVar[Optional[str]] = ContextVar("identity_user_id", default=None)
_provider: ContextVar[Optional[str]] = ContextVar("identity_provider", default=None)

_CORRELATION_FIELDS = (
    ("request_id", _request_id),
    ("user_id", _user_id),
    ("provider", _provider),
)

_REDACTED = "***"
_SECRET_KEY_MARKERS = ("secret", "password", "private_key", "token", "assertion", "code_verifier")


def split_component(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """``identity.flow.orchestrator`` -> service ``identity``, component ``flow.orchestrator``."""
    service, _, component = event_dict.get("logger", "").partition(".")
    if component:
        event_dict["service"] = service
        event_dict["component"] = component
    return event_dict


def add_trace_ids(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    span = trace.get_current_span()
    if not span.is_recording():
        return event_dict
    context = span.get_span_context()
    if context.trace_id:
        event_dict["trace_id"] = format(context.trace_id, "032x")
    if context.span_id:
        event_dict["span_id"] = format(context.span_id, "016x")
    return event_dict


def add_correlation_fields(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Copy the request's correlation fields without overriding explicit ones."""
    for field, var in _CORRELATION_FIELDS:
        value = var.get()
        if value and field not in event_dict:
            event_dict[field] = value
    return event_dict


def redact_event(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask values of secret-looking keys before rendering."""
    for key in list(event_dict.keys()):
        if any(marker in key.lower() for marker in _SECRET_KEY_MARKERS):
            event_dict[key] = _REDACTED
    return event_dict


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Route structlog through stdlib logging with JSON output on stdout."""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            split_component,
            add_trace_ids,
            add_correlation_fields,
            redact_event,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger(service_name).setLevel(level)


def redact(value: Optional[str], keep: int = 4) -> str:
    """Return a masked form of ``value`` safe to log.

    Only a short prefix survives, and nothing at all for short values.
    """
    if not value:
        return ""
    if len(value) <= keep * 2:
        return _REDACTED
    return f"{value[:keep]}{_REDACTED}"


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind the inbound request id, generating one when the caller sent none."""
    request_id = request_id or uuid.uuid4().hex
    _request_id.set(request_id)
    return request_id


def set_auth_context(user_id: Optional[str] = None, provider: Optional[str] = None) -> None:
    if user_id:
        _user_id.set(user_id)
    if provider:
        _provider.set(provider)


def clear_context() -> None:
    for _, var in _CORRELATION_FIELDS:
        var.set(None)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

"""
Shared logging configuration for the CRM admission layer.

Every log line is a JSON object. Besides the event fields it carries the
service name, the OpenTelemetry trace/span ids when a span is recording, and
the admission context of the call being handled: request id, governed
identity and gate name.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog
from opentelemetry import trace

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
identity_var: ContextVar[Optional[str]] = ContextVar("identity", default=None)
gate_var: ContextVar[Optional[str]] = ContextVar("gate", default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "identity": identity_var,
    "gate": gate_var,
}


def configure_logging(service_name: str, log_level: str = "info") -> None:
    """Configure structured logging for a service."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_service_context,
            add_trace_context,
            add_admission_context,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger().setLevel(level)


def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    # Loggers are named "<service>.<component>"
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        event_dict.setdefault("service", logger_name.split(".", 1)[0])
    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach trace and span ids of the active span, if any."""
    span = trace.get_current_span()
    if span is None or not span.is_recording():
        return event_dict

    span_context = span.get_span_context()
    if span_context.trace_id:
        event_dict["trace_id"] = f"{span_context.trace_id:032x}"
    if span_context.span_id:
        event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def add_admission_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Attach request id, identity and gate unless the event already names them."""
    for field_name, var in _CONTEXT_VARS.items():
        value = var.get()
        if value and field_name not in event_dict:
            event_dict[field_name] = value
    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set the request id for the current context, generating one if needed."""
    request_id = request_id or uuid.uuid4().hex
    request_id_var.set(request_id)
    return request_id


def bind_admission_context(identity: Optional[str] = None, gate: Optional[str] = None) -> None:
    """Remember which identity and gate the current call belongs to."""
    if identity:
        identity_var.set(identity)
    if gate:
        gate_var.set(gate)


def clear_context() -> None:
    for var in _CONTEXT_VARS.values():
        var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)

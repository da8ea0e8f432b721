"""
Shared error handling for the CRM admission layer.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AdmissionLayerException(Exception):
    """Base exception for admission layer services."""

    status_code: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        # Get trace ID from current span
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(AdmissionLayerException):
    """Bad identity, key or request shape. Never admitted, never cached."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(AdmissionLayerException):
    """Unknown guarded endpoint or resource."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class OperationError(AdmissionLayerException):
    """The guarded operation failed.

    Raised by operations; the guarded endpoint converts it into a failed
    outcome that is cached like a success.
    """

    status_code = 502

    def __init__(self, message: str = "Operation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("OPERATION_ERROR", message, details)


class StoreError(AdmissionLayerException):
    """The durable dedupe store was unreachable or returned garbage."""

    status_code = 503

    def __init__(self, operation: str, message: str = "Dedupe store error", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_ERROR", f"{operation}: {message}", details)
        self.operation = operation

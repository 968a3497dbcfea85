"""
Shared error handling for the Module Entitlements service.
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


class EntitlementServiceException(Exception):
    """Base exception for the entitlements core."""

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


class NotFoundError(EntitlementServiceException):
    """The requested entitlement does not exist."""

    def __init__(self, message: str = "Entitlement not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ConflictError(EntitlementServiceException):
    """A concurrent write on the same pair won the race."""

    def __init__(self, message: str = "Concurrent modification", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT", message, details)


class UnavailableError(EntitlementServiceException):
    """A backing service (store or cache) cannot be reached."""

    def __init__(self, service: str, message: str = "Backend unavailable", details: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__("UNAVAILABLE", f"{service}: {message}", details)


class InvalidInputError(EntitlementServiceException):
    """Validation-related errors."""

    def __init__(self, message: str = "Invalid input", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVALID_INPUT", message, details)

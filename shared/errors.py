"""
Shared error handling for Crewbook Entitlements.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class EntitlementsException(Exception):
    """Base exception for entitlements services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
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


class AuthorizationError(EntitlementsException):
    """Caller is authenticated but not allowed to perform the operation."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class ValidationError(EntitlementsException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class IdentityMissing(EntitlementsException):
    """No authenticated account is attached to the request."""

    status_code = 401

    def __init__(self, message: str = "No authenticated account", details: Optional[Dict[str, Any]] = None):
        super().__init__("IDENTITY_MISSING", message, details)


class OracleUnavailable(EntitlementsException):
    """The billing provider could not be reached or answered with an error."""

    status_code = 503

    def __init__(self, message: str = "Billing provider unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("ORACLE_UNAVAILABLE", message, details)


class CacheWriteFailed(EntitlementsException):
    """A subscription record correction could not be persisted."""

    status_code = 503

    def __init__(self, account_id: str, message: str = "Subscription cache write failed",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_WRITE_FAILED", message, {"account_id": account_id, **(details or {})})


class CacheReadFailed(EntitlementsException):
    """The subscription record could not be read."""

    status_code = 503

    def __init__(self, account_id: str, message: str = "Subscription cache read failed",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_READ_FAILED", message, {"account_id": account_id, **(details or {})})


class LifecycleOperationFailed(EntitlementsException):
    """A user-initiated create/cancel/complete operation did not succeed."""

    status_code = 502

    def __init__(self, operation: str, message: str = "Subscription operation failed",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("LIFECYCLE_OPERATION_FAILED", f"{operation}: {message}", details)
        self.operation = operation

"""
Shared error handling for the rate limiter service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessLayerException(Exception):
    """Base exception for rate limiter services."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            trace_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ConfigurationError(AccessLayerException):
    """Invalid or missing rate limit configuration.

    Raised at setup or update time. A route without a configuration and
    without a fallback cannot be served, so this is never converted into
    a permissive decision.
    """

    def __init__(self, message: str = "Invalid rate limit configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class StoreUnavailableError(AccessLayerException):
    """The shared quota store could not be reached or timed out."""

    def __init__(self, message: str = "Quota store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)


class MalformedResultError(AccessLayerException):
    """The quota store answered with something other than [allowed, tokens]."""

    def __init__(self, message: str = "Malformed rate limiter result", details: Optional[Dict[str, Any]] = None):
        super().__init__("MALFORMED_RESULT", message, details)


class RateLimitError(AccessLayerException):
    """Rate limiting errors."""

    def __init__(self, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None,
                 headers: Optional[Dict[str, str]] = None, status_code: int = 429):
        super().__init__("RATE_LIMIT_ERROR", message, details)
        self.headers = dict(headers or {})
        self.status_code = status_code

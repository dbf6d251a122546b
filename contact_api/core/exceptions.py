# contact_api/core/exceptions.py
from __future__ import annotations

from typing import Any, Dict, Optional


class BaseAPIException(Exception):
    """Base exception for all API errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.headers = headers
        super().__init__(self.message)


class ValidationError(BaseAPIException):
    """Submitted data or request metadata failed validation."""
    def __init__(self, field: str, reason: str, **kwargs):
        kwargs.setdefault("code", "validation_error")
        super().__init__(reason, status_code=400, details={"field": field}, **kwargs)
        self.field = field
        self.reason = reason


class CSRFInvalid(BaseAPIException):
    """CSRF token missing, unknown, expired or already used."""
    def __init__(self, message: str = "Invalid or missing CSRF token", **kwargs):
        kwargs.setdefault("code", "csrf_invalid")
        super().__init__(message, status_code=403, **kwargs)


class MethodNotAllowed(BaseAPIException):
    """HTTP method not accepted by the endpoint."""
    def __init__(self, allowed: str = "POST", **kwargs):
        kwargs.setdefault("code", "method_not_allowed")
        super().__init__(
            f"Method not allowed. Use {allowed}.",
            status_code=405,
            headers={"Allow": allowed},
            **kwargs,
        )
        self.allowed = allowed


class RateLimitExceeded(BaseAPIException):
    """Rate limit exceeded."""
    def __init__(
        self,
        message: str = "Rate limit exceeded. Please try again later.",
        retry_after: Optional[int] = None,
        **kwargs,
    ):
        kwargs.setdefault("code", "rate_limit_exceeded")
        headers = {"Retry-After": str(retry_after)} if retry_after is not None else None
        super().__init__(message, status_code=429, headers=headers, **kwargs)
        self.retry_after = retry_after


class CRMError(BaseAPIException):
    """The CRM rejected a call or could not be reached."""
    def __init__(self, message: str = "CRM request failed", status: Optional[int] = None, **kwargs):
        kwargs.setdefault("code", "crm_error")
        super().__init__(message, status_code=500, **kwargs)
        self.status = status


class CircuitOpenError(CRMError):
    """Raised without touching the network while the breaker is open."""
    def __init__(self, message: str = "Circuit breaker is OPEN - failing fast", **kwargs):
        kwargs.setdefault("code", "circuit_open")
        super().__init__(message, **kwargs)


class InternalError(BaseAPIException):
    """Unexpected failure while processing a submission."""
    def __init__(self, detail: str, **kwargs):
        kwargs.setdefault("code", "internal_error")
        super().__init__("Failed to submit contact form", status_code=500, **kwargs)
        self.detail = detail


class ServiceUnavailableError(BaseAPIException):
    """Service unavailable."""
    def __init__(self, message: str = "Service unavailable", **kwargs):
        super().__init__(message, status_code=503, **kwargs)

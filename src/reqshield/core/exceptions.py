"""
Custom exceptions for the reqshield pipeline.

Each stage raises one of these to short-circuit a request. The public
response only ever carries the category and a generic message; the
triggering rule stays in ``details`` for internal logging.
"""

from typing import Any, Dict, Optional


class ReqShieldException(Exception):
    """Base exception for reqshield rejections."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "internal_error",
        public_message: str = "Internal Server Error",
        public_error: str = "An unexpected error occurred",
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.public_message = public_message
        self.public_error = public_error
        self.details = details or {}
        self.headers = headers or {}

    def to_response_body(self) -> Dict[str, Any]:
        """Client-facing JSON body. Never includes ``details``."""
        return {
            "statusCode": self.status_code,
            "message": self.public_message,
            "error": self.public_error,
        }


class ValidationFailure(ReqShieldException):
    """Raised for malformed, oversized or malicious input."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=400,
            error_code="validation_failed",
            public_message="Bad Request",
            public_error="Request validation failed",
            details=details,
        )


class AuthorizationFailure(ReqShieldException):
    """Raised when the CSRF token is missing, mismatched or forged."""

    def __init__(self, message: str = "CSRF token validation failed", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=403,
            error_code="csrf_rejected",
            public_message="Forbidden",
            public_error="Invalid CSRF token",
            details=details,
        )


class PolicyViolation(ReqShieldException):
    """Raised when a rate-limit policy threshold is exceeded."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: int = 1,
        limit: int = 0,
        reset_at: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        headers = {
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(reset_at) if reset_at is not None else "",
        }
        super().__init__(
            message=message,
            status_code=429,
            error_code="rate_limit_exceeded",
            public_message="Too Many Requests",
            public_error="Rate limit exceeded",
            details=details,
            headers=headers,
        )
        self.retry_after = retry_after


class InternalFault(ReqShieldException):
    """Raised when a stage fails unexpectedly (e.g. malformed policy config)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="internal_fault",
            details=details,
        )

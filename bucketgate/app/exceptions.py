"""Custom exceptions for the rate limiter."""

from typing import Optional


class RateLimiterException(Exception):
    """Base class for rate limiter exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Rate limiter error"):
        self.message = message
        super().__init__(message)


class ConfigurationError(RateLimiterException):
    """Raised when a rate limit policy is invalid.

    Detected when the policy is built, never per request.
    """
    status_code = 500

    def __init__(self, field: str, detail: str):
        self.field = field
        self.detail = detail
        super().__init__(f"Invalid rate limit configuration for {field}: {detail}")


class StoreUnavailable(RateLimiterException):
    """Raised when the bucket state store cannot complete the atomic operation.

    Covers connection failures, timeouts, store-side errors and exhausted
    optimistic retries. Maps to HTTP 503 Service Unavailable.
    """
    status_code = 503

    def __init__(self, reason: str, cause: Optional[BaseException] = None):
        self.reason = reason
        self.cause = cause
        message = f"Bucket store unavailable ({reason})"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class EncodingError(RateLimiterException):
    """Raised when stored bucket state cannot be decoded."""
    status_code = 500

    def __init__(self, detail: str, key: Optional[str] = None):
        self.key = key
        self.detail = detail
        message = f"Malformed bucket state: {detail}"
        if key:
            message += f" (key={key})"
        super().__init__(message)

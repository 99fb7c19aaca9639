"""Custom exception hierarchy."""

from typing import Optional


class AppError(Exception):
    """Base exception for application errors."""
    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class AuthenticationRequired(AppError):
    """Raised when no session token is available for a gateway call."""
    pass


class GatewayError(AppError):
    """Raised when the reasoning service fails, times out, or is unreachable."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        original_error: Exception = None,
    ):
        super().__init__(message, original_error=original_error)
        self.status_code = status_code
        self.body = body


class RateLimitExceeded(GatewayError):
    """Raised when the request budget is exhausted locally or remotely (429)."""
    pass


class EmptyResponseError(GatewayError):
    """Raised when a 2xx response carries no usable message content."""
    pass


class SchemaViolation(AppError):
    """Raised when model output cannot be read as the expected object shape."""
    pass


class PersistenceError(AppError):
    """Raised when a verification record or submission cannot be stored."""
    pass


class ValidationError(AppError):
    """Raised when input validation fails."""
    pass


class RecordNotFoundError(AppError):
    """Raised when a company record or submission does not exist."""
    pass


class InvalidTransitionError(AppError):
    """Raised when a requirement status change is not allowed."""
    pass


class StaleResultError(InvalidTransitionError):
    """Raised when an update targets a submission that has been superseded."""
    pass


class ConcurrentUpdateError(AppError):
    """Raised when a record changed in storage after it was read."""
    pass

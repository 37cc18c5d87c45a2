"""
Custom error classes for the application.
"""
from typing import Optional


class AppError(Exception):
    """Base application error."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        status_code: int = 500,
        details: Optional[dict] = None
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert error to dictionary for response."""
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class AuthError(AppError):
    """Authentication related errors."""

    def __init__(self, message: str, code: str = "AUTH_ERROR"):
        super().__init__(message, code, status_code=401)


class SessionExpiredError(AuthError):
    """Session has expired."""

    def __init__(self):
        super().__init__(
            "Your session has expired. Please sign in again.",
            "SESSION_EXPIRED"
        )


class PermissionRevokedError(AuthError):
    """Gmail permissions were revoked."""

    def __init__(self):
        super().__init__(
            "Gmail access was revoked. Please sign in and grant permissions again.",
            "PERMISSION_REVOKED"
        )


class ForbiddenError(AppError):
    """The user may not perform this action."""

    def __init__(self, message: str = "You are not allowed to do that."):
        super().__init__(message, "FORBIDDEN", status_code=403)


class GmailError(AppError):
    """Gmail API related errors."""

    def __init__(
        self,
        message: str = "Couldn't reach Gmail. Please try again.",
        status_code: int = 503,
        code: str = "GMAIL_ERROR"
    ):
        super().__init__(message, code, status_code=status_code)


class ThreadCheckTimeoutError(GmailError):
    """Fetching a thread took longer than the configured limit."""

    def __init__(self, thread_id: str, timeout: float):
        super().__init__(
            f"Timed out after {timeout:g}s checking thread {thread_id}.",
            status_code=504,
            code="THREAD_CHECK_TIMEOUT",
        )
        self.details = {"thread_id": thread_id, "timeout": timeout}


class NotFoundError(AppError):
    """A referenced record does not exist or is not visible to the caller."""

    def __init__(self, message: str = "Not found.", code: str = "NOT_FOUND", details: Optional[dict] = None):
        super().__init__(message, code, status_code=404, details=details)


class ReplyNotFoundError(NotFoundError):
    """Reply not found."""

    def __init__(self, reply_id=None):
        message = f"Reply {reply_id} not found." if reply_id is not None else "Reply not found."
        super().__init__(message, "REPLY_NOT_FOUND", details={"reply_id": reply_id})


class RequestNotFoundError(NotFoundError):
    """Time-off request not found."""

    def __init__(self, request_id=None):
        message = f"Request {request_id} not found." if request_id is not None else "Request not found."
        super().__init__(message, "REQUEST_NOT_FOUND", details={"request_id": request_id})


class StateConflictError(AppError):
    """The operation does not apply to the current state of the records."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, "STATE_CONFLICT", status_code=409, details=details)


class InvalidRequestError(AppError):
    """Invalid request format."""

    def __init__(self, message: str = "Invalid request format."):
        super().__init__(message, "INVALID_REQUEST", status_code=400)


class RateLimitError(AppError):
    """Rate limit exceeded."""

    def __init__(self):
        super().__init__(
            "Too many requests. Please wait a moment.",
            "RATE_LIMITED",
            status_code=429
        )

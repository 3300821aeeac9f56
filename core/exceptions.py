"""
Error taxonomy for the directory security core.

Every error carries:
    status_code  - HTTP status the API layer renders
    code         - stable machine-readable code
    user_message - what the end user is allowed to see
    reason       - detailed internal reason (server logs and audit trail only)
"""
from datetime import datetime
from typing import Any, Dict, List, Optional


class DirectoryError(Exception):
    """Base class for all errors raised by the security core."""
    status_code = 400
    code = "directory_error"
    default_message = "Request could not be processed."

    def __init__(self, user_message: Optional[str] = None, reason: Optional[str] = None, **context: Any):
        self.user_message = user_message or self.default_message
        self.reason = reason or self.code
        self.context = context
        super().__init__(self.reason)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "detail": self.user_message}


class ValidationError(DirectoryError):
    """Field-level problems. Recoverable: fix the form and resubmit."""
    status_code = 422
    code = "validation_error"
    default_message = "Please fix the highlighted fields."

    def __init__(self, errors: List[str], reason: Optional[str] = None):
        self.errors = list(errors)
        super().__init__(self.default_message, reason=reason or "validation_failed")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class AuthenticationError(DirectoryError):
    """Bad credentials, inactive account, role mismatch. Always generic to the user."""
    status_code = 401
    code = "authentication_failed"
    default_message = "Invalid username, password, or role."


class UnauthenticatedError(AuthenticationError):
    """No session on a protected route."""
    code = "unauthenticated"
    default_message = "Please log in to continue."

    def __init__(self, reason: str = "unauthorized"):
        super().__init__(reason=reason)


class SessionExpiredError(AuthenticationError):
    """Session idle longer than the configured window."""
    code = "session_expired"
    default_message = "Your session has expired. Please log in again."

    def __init__(self, reason: str = "timeout"):
        super().__init__(reason=reason)


class PinRejectedError(AuthenticationError):
    """Wrong admin PIN on an authenticated request."""
    status_code = 403
    code = "pin_rejected"
    default_message = "Incorrect admin PIN."

    def __init__(self, attempts_left: int):
        self.attempts_left = attempts_left
        super().__init__(
            f"Incorrect admin PIN. Attempts left: {attempts_left}",
            reason="pin_mismatch",
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["attempts_left"] = self.attempts_left
        return data


class AuthorizationError(DirectoryError):
    """Role gate failure. Hard stop for the request."""
    status_code = 403
    code = "access_denied"
    default_message = "Access denied: you do not have permission to perform this action."


class LockoutError(DirectoryError):
    """PIN attempts exhausted; the gate is closed until locked_until."""
    status_code = 423
    code = "pin_locked"

    def __init__(self, locked_until: datetime, now: datetime):
        self.locked_until = locked_until
        remaining = max(0, int((locked_until - now).total_seconds()))
        self.retry_after = remaining
        minutes = max(1, -(-remaining // 60))
        super().__init__(
            f"Too many incorrect attempts. Try again in {minutes} minutes.",
            reason="pin_locked",
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retry_after"] = self.retry_after
        return data


class TokenError(DirectoryError):
    """Reset or transfer token invalid, expired or already used. Never says which."""
    status_code = 400
    code = "invalid_token"
    default_message = "Invalid or expired link. Please start again."


class NotFoundError(DirectoryError):
    status_code = 404
    code = "not_found"
    default_message = "User not found."


class TransactionError(DirectoryError):
    """Multi-table write failed and was rolled back."""
    status_code = 500
    code = "transaction_failed"
    default_message = "The operation could not be completed. No changes were made."


class ConfigurationError(DirectoryError):
    """Server-side data required by the core is missing (e.g. admin PIN record)."""
    status_code = 500
    code = "configuration_error"
    default_message = "The operation could not be completed. Contact the system administrator."

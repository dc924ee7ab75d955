"""Exception hierarchy for the case portal.

Security: ``safe_message`` is what reaches HTTP clients. The full message
may carry paths or internal state and is only logged.
"""

from __future__ import annotations


class PortalError(Exception):
    """Base exception for the case portal.

    Each subclass carries the HTTP status it maps to, so the REST layer
    can translate any ``PortalError`` without a lookup table.
    """

    status_code = 500

    def __init__(self, message: str, *, safe_message: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Full error message (for logging)
            safe_message: Client-safe message (no internal details)
        """
        super().__init__(message)
        self._safe_message = safe_message or message

    @property
    def safe_message(self) -> str:
        """Return client-safe error message."""
        return self._safe_message


class ValidationError(PortalError):
    """Malformed or out-of-range input.

    Safe to return to clients as-is: it describes their input,
    not server state.
    """

    status_code = 400


class AuthError(PortalError):
    """Missing, invalid or expired credentials."""

    status_code = 401


class InvalidTokenError(AuthError):
    """Bearer token is malformed, unsigned, or unknown."""

    def __init__(self, message: str = "Invalid or expired token") -> None:
        super().__init__(message, safe_message="Invalid or expired token")


class SessionExpiredError(AuthError):
    """Bearer token was valid but its window has elapsed."""

    def __init__(self, message: str = "Session expired") -> None:
        super().__init__(message, safe_message="Session expired. Please login again.")


class InvalidCodeError(AuthError):
    """Submitted one-time code does not match the live code."""

    def __init__(self, message: str = "Invalid code") -> None:
        super().__init__(
            message,
            safe_message="Invalid code. Please check the code and try again.",
        )


class CodeExpiredError(AuthError):
    """Submitted one-time code matched but is past its expiry."""

    def __init__(self, message: str = "Code expired") -> None:
        super().__init__(
            message,
            safe_message="Code has expired. Please request a new code.",
        )


class InvalidCredentialsError(AuthError):
    """Staff email/password pair did not match."""

    def __init__(self) -> None:
        super().__init__("Invalid credentials")


class ForbiddenError(PortalError):
    """Authenticated, but not allowed to touch this resource."""

    status_code = 403


class NotFoundError(PortalError):
    """Requested record does not exist (or is not visible to the caller)."""

    status_code = 404


class LockoutError(PortalError):
    """Too many failed logins from one source.

    Carries the number of whole seconds until the lockout lifts.
    """

    status_code = 429

    def __init__(self, retry_after: int) -> None:
        minutes = max(1, -(-retry_after // 60))
        message = f"Too many login attempts. Please try again in {minutes} minutes."
        super().__init__(message, safe_message=message)
        self.retry_after = retry_after


class RateLimitError(PortalError):
    """Request throttled by a per-source rate limiter."""

    status_code = 429

    def __init__(self, limit_type: str = "api") -> None:
        message = f"Rate limit exceeded for {limit_type}. Please try again later."
        super().__init__(message, safe_message=message)
        self.limit_type = limit_type


class StoreError(PortalError):
    """Persistence I/O failure.

    Never returned verbatim: file paths and driver errors stay in logs.
    """

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message, safe_message="Storage failure. Check server logs.")


class NotifyError(PortalError):
    """Email delivery failed.

    The dispatcher logs and swallows these; they never fail the
    operation that triggered the notification.
    """

    status_code = 502

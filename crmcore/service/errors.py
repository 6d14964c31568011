from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are never distinguished."""

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(AuthenticationError):
    """Too many failed logins; carries the remaining lockout in minutes."""

    def __init__(self, remaining_minutes: int, **kwargs) -> None:
        super().__init__(
            f"account is locked, try again in {remaining_minutes} minutes", **kwargs
        )
        self.remaining_minutes = remaining_minutes


class AccountDeactivatedError(AuthenticationError):
    def __init__(self, message: str = "account is deactivated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Bad signature, expired or wrong token type, collapsed for the caller."""

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionNotFoundError(AuthenticationError):
    """No session row for the token: revoked, purged or already rotated."""

    def __init__(self, message: str = "session not found or expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""

    def __init__(self, message: str = "session expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionRevokedError(AuthenticationError):
    """Access token is cryptographically valid but its session is gone."""

    def __init__(self, message: str = "session has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateEmailError(ConflictError):
    def __init__(self, message: str = "email already registered", **kwargs) -> None:
        kwargs.setdefault("detail", {"field": "email"})
        super().__init__(message, **kwargs)


class RateLimitedError(ServiceError):
    """Token bucket for the caller is empty (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, retry_after_seconds: int, **kwargs) -> None:
        kwargs.setdefault("detail", {"retry_after_seconds": retry_after_seconds})
        super().__init__("rate limit exceeded", **kwargs)
        self.retry_after_seconds = retry_after_seconds


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AccountDeactivatedError",
    "InvalidTokenError",
    "SessionNotFoundError",
    "SessionExpiredError",
    "SessionRevokedError",
    "NotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "RateLimitedError",
]

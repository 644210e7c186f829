from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries a stable ``error_code`` plus the HTTP ``status_code``
    the excluded controller layer should map it to:
    - unauthorized (401)
    - not_found (404)
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidResetToken(ValidationError):
    error_code = "invalid_reset_token"

    def __init__(
        self, message: str = "password reset token is invalid or expired", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Local login failed. The message never says why."""

    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidToken(AuthenticationError):
    """Token failed signature, claim, expiry or kind checks."""

    error_code = "invalid_token"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidRefreshToken(AuthenticationError):
    """Refresh token is malformed, expired, unknown, consumed, or its user is gone."""

    error_code = "invalid_refresh_token"

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidAccessToken(AuthenticationError):
    error_code = "invalid_access_token"

    def __init__(self, message: str = "invalid access token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SocialAuthError(AuthenticationError):
    """Provider code exchange or profile lookup failed."""

    error_code = "social_auth_failed"

    def __init__(self, message: str = "social sign-in failed", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFound(NotFoundError):
    error_code = "user_not_found"

    def __init__(self, user_id: str, **kwargs) -> None:
        super().__init__("user not found", detail={"user_id": user_id}, **kwargs)
        self.user_id = user_id


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountAlreadyExists(ConflictError):
    """Email or social identity already belongs to an account."""

    error_code = "account_exists"

    def __init__(self, message: str = "an account already exists for this email", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Malformed or missing configuration; fatal at startup."""

    error_code = "configuration_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "InvalidToken",
    "InvalidRefreshToken",
    "InvalidAccessToken",
    "SocialAuthError",
    "NotFoundError",
    "UserNotFound",
    "ConflictError",
    "AccountAlreadyExists",
    "ServerError",
    "ConfigurationError",
]

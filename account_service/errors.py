"""Typed failures raised by the account service core.

Every error carries a stable snake_case ``code`` (what API clients see in
``detail``) and the HTTP status the API layer maps it to.
"""

from __future__ import annotations

from typing import Optional


class AccountServiceError(Exception):
    """Base class for all account service errors."""

    code: str = "error"
    status_code: int = 500
    default_message: str = "Internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ConfigurationError(AccountServiceError):
    code = "configuration_error"
    default_message = "Invalid configuration"


class ValidationError(AccountServiceError):
    """Malformed or missing input."""

    code = "validation_error"
    status_code = 400
    default_message = "Validation failed"

    def __init__(self, message: Optional[str] = None, *, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class DuplicateEmail(AccountServiceError):
    code = "duplicate_email"
    status_code = 409
    default_message = "Email already registered"


class DuplicateUsername(AccountServiceError):
    code = "duplicate_username"
    status_code = 409
    default_message = "Username already taken"


class InvalidCredentials(AccountServiceError):
    """Unknown email OR wrong password. Never split the two."""

    code = "invalid_credentials"
    status_code = 401
    default_message = "Invalid credentials"


class InvalidCurrentPassword(AccountServiceError):
    code = "invalid_current_password"
    status_code = 400
    default_message = "Current password is incorrect"


class InvalidOrExpiredToken(AccountServiceError):
    code = "invalid_or_expired_token"
    status_code = 401
    default_message = "Invalid or expired token"


class InvalidRefreshToken(AccountServiceError):
    code = "invalid_refresh_token"
    status_code = 401
    default_message = "Invalid refresh token"


class MissingToken(AccountServiceError):
    code = "missing_token"
    status_code = 401
    default_message = "Access denied. No token provided."


class Forbidden(AccountServiceError):
    code = "forbidden"
    status_code = 403
    default_message = "Access denied. Insufficient permissions."


class NotFound(AccountServiceError):
    code = "not_found"
    status_code = 404
    default_message = "Account not found"


class HashingError(AccountServiceError):
    code = "hashing_error"
    status_code = 500
    default_message = "Password hashing failed"


class DatastoreUnavailable(AccountServiceError):
    code = "datastore_unavailable"
    status_code = 503
    default_message = "Datastore is not available"

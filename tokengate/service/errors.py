from __future__ import annotations

from typing import Optional


class ConfigurationError(Exception):
    """Startup configuration is unusable; the process must not serve requests."""


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``.
    Messages are deliberately generic: callers never learn which sub-check
    failed (unknown email vs. wrong password, expired vs. replayed token).
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request could not be processed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Request is malformed or references something not allowed (400)."""
    status_code = 400
    error_code = "validation_error"
    default_message = "invalid request"


class DuplicateAccountError(ServiceError):
    """Registration email already belongs to an account (400)."""
    status_code = 400
    error_code = "duplicate_account"
    default_message = "an account with this email already exists"


class WeakCredentialError(ServiceError):
    """Password rejected by the password policy (400)."""
    status_code = 400
    error_code = "weak_credential"
    default_message = "password does not meet the policy"


class InvalidCredentialError(ServiceError):
    """Email/password pair did not authenticate (401)."""
    status_code = 401
    error_code = "invalid_credential"
    default_message = "invalid credentials"


class InvalidTokenError(ServiceError):
    """Access or refresh token missing, expired, revoked or forged (401)."""
    status_code = 401
    error_code = "invalid_token"
    default_message = "invalid token"


class ExternalAuthenticationFailedError(ServiceError):
    """Upstream identity provider handshake did not succeed (401)."""
    status_code = 401
    error_code = "external_authentication_failed"
    default_message = "external authentication failed"


class EmailConflictError(ServiceError):
    """External identity cannot be linked to the account owning its email (409)."""
    status_code = 409
    error_code = "email_conflict"
    default_message = "email is linked to a different external account"


class StoreUnavailableError(ServiceError):
    """Credential store could not be reached; not retried (503)."""
    status_code = 503
    error_code = "unavailable"
    default_message = "service temporarily unavailable"


__all__ = [
    "ConfigurationError",
    "ServiceError",
    "BadRequestError",
    "DuplicateAccountError",
    "WeakCredentialError",
    "InvalidCredentialError",
    "InvalidTokenError",
    "ExternalAuthenticationFailedError",
    "EmailConflictError",
    "StoreUnavailableError",
]

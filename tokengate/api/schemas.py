from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tokengate.logging import get_correlation_id

# Upper bound on any password accepted over the wire; the policy is enforced by the service
MAX_PASSWORD_INPUT_LENGTH = 1024

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "duplicate_account",
    "weak_credential",
    "invalid_credential",
    "invalid_token",
    "external_authentication_failed",
    "email_conflict",
    "conflict",
    "not_found",
    "method_not_allowed",
    "unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=MAX_PASSWORD_INPUT_LENGTH)

    @field_validator("email")
    @classmethod
    def _normalize_login_email(cls, value: str) -> str:
        # Malformed emails simply fail to authenticate; no format oracle on login
        return _normalize_unicode(value.strip().lower())


class SessionResponse(BaseModel):
    """Body of a successful sign-in; token values travel in cookies only."""

    user_id: str
    email: str
    access_expires_at: datetime
    refresh_expires_at: datetime


class AccountResponse(BaseModel):
    user_id: str
    email: Optional[str] = None

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Emails are unique case-insensitively; store and compare them lower-cased."""
    return email.strip().lower()


@dataclass(frozen=True)
class ExternalIdentity:
    provider: str
    subject: str
    linked_at: datetime = field(default_factory=utcnow)


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    external_identities: List[ExternalIdentity] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    def identity_for(self, provider: str) -> Optional[ExternalIdentity]:
        return next(
            (ident for ident in self.external_identities if ident.provider == provider),
            None,
        )

    def copy(self) -> "User":
        return replace(self, external_identities=list(self.external_identities))


@dataclass
class RefreshToken:
    """Persisted refresh token state; the raw value is never stored."""

    token_hash: str
    user_id: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and now < self.expires_at


__all__ = [
    "ExternalIdentity",
    "RefreshToken",
    "User",
    "normalize_email",
    "utcnow",
]

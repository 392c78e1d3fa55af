from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from tokengate.logging import get_logger
from tokengate.storage.errors import ConstraintViolation
from tokengate.storage.models import (
    ExternalIdentity,
    RefreshToken,
    User,
    normalize_email,
)


class MemoryStore:
    """In-process credential store for development and tests.

    Every mutation happens under one re-entrant lock, which makes refresh
    token rotation a true compare-and-swap: the "still active" check and the
    revocation are observed atomically by concurrent callers.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._email_index: Dict[str, str] = {}
        self._identity_index: Dict[Tuple[str, str], str] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._user_tokens: Dict[str, List[str]] = {}
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        identity: Optional[ExternalIdentity] = None,
        refresh_token: Optional[RefreshToken] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if identity and (identity.provider, identity.subject) in self._identity_index:
                raise ConstraintViolation(
                    "external identity already linked", {"provider": identity.provider}
                )
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                external_identities=[identity] if identity else [],
            )
            self.users[user.id] = user
            self._email_index[normalized] = user.id
            if identity:
                self._identity_index[(identity.provider, identity.subject)] = user.id
            if refresh_token:
                self._install_refresh_token(replace(refresh_token, user_id=user.id))
            return user.copy()

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return user.copy() if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(normalize_email(email))
            return self.users[user_id].copy() if user_id else None

    def get_user_by_external_identity(
        self, provider: str, subject: str
    ) -> Optional[User]:
        with self._data_lock:
            user_id = self._identity_index.get((provider, subject))
            user = self.users.get(user_id) if user_id else None
            return user.copy() if user else None

    def link_external_identity(
        self,
        user_id: str,
        identity: ExternalIdentity,
        *,
        refresh_token: Optional[RefreshToken] = None,
    ) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            owner = self._identity_index.get((identity.provider, identity.subject))
            if owner and owner != user_id:
                raise ConstraintViolation(
                    "external identity already linked", {"provider": identity.provider}
                )
            existing = user.identity_for(identity.provider)
            if existing and existing.subject != identity.subject:
                raise ConstraintViolation(
                    "provider already linked with another subject",
                    {"provider": identity.provider},
                )
            if not existing:
                user.external_identities.append(identity)
                self._identity_index[(identity.provider, identity.subject)] = user_id
            if refresh_token:
                self._install_refresh_token(replace(refresh_token, user_id=user_id))
            return user.copy()

    # refresh tokens
    def _install_refresh_token(self, record: RefreshToken) -> None:
        """Revoke the owner's active token and store ``record``. Caller holds the lock.

        The owner's records that expired before ``record`` was issued are
        dropped; revoked ones are kept until expiry so replays stay traceable.
        """
        kept: List[str] = []
        for token_hash in self._user_tokens.get(record.user_id, []):
            existing = self.refresh_tokens[token_hash]
            if existing.expires_at <= record.issued_at:
                del self.refresh_tokens[token_hash]
                continue
            if existing.revoked_at is None:
                existing.revoked_at = record.issued_at
                existing.replaced_by = record.token_hash
            kept.append(token_hash)
        kept.append(record.token_hash)
        self._user_tokens[record.user_id] = kept
        self.refresh_tokens[record.token_hash] = record

    def replace_refresh_token(self, user_id: str, record: RefreshToken) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            self._install_refresh_token(replace(record, user_id=user_id))

    def rotate_refresh_token(
        self,
        token_hash: str,
        *,
        new_token_hash: str,
        issued_at: datetime,
        expires_at: datetime,
        now: datetime,
    ) -> Optional[RefreshToken]:
        """Atomically swap an active refresh token for a new one.

        Returns the successor record, or ``None`` when the presented token is
        unknown, expired, already revoked, or its owner no longer exists.
        """
        with self._data_lock:
            current = self.refresh_tokens.get(token_hash)
            if not current or not current.is_active(now):
                return None
            if current.user_id not in self.users:
                return None
            successor = RefreshToken(
                token_hash=new_token_hash,
                user_id=current.user_id,
                issued_at=issued_at,
                expires_at=expires_at,
            )
            self._install_refresh_token(successor)
            return replace(successor)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return replace(record) if record else None

    def list_active_refresh_tokens(self, user_id: str, now: datetime) -> List[RefreshToken]:
        with self._data_lock:
            return [
                replace(self.refresh_tokens[token_hash])
                for token_hash in self._user_tokens.get(user_id, [])
                if self.refresh_tokens[token_hash].is_active(now)
            ]

    def verify_connection(self) -> None:
        return None

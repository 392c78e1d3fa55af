from __future__ import annotations

import contextlib
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, List, Optional, Protocol

from tokengate.logging import get_logger
from tokengate.service.errors import (
    BadRequestError,
    DuplicateAccountError,
    EmailConflictError,
    ExternalAuthenticationFailedError,
    InvalidCredentialError,
    InvalidTokenError,
    StoreUnavailableError,
    WeakCredentialError,
)
from tokengate.service.external import ExternalLoginClaim
from tokengate.service.passwords import PasswordHasher
from tokengate.service.tokens import TokenProcessor
from tokengate.storage.errors import ConstraintViolation, StoreUnavailable
from tokengate.storage.models import (
    ExternalIdentity,
    RefreshToken,
    User,
    normalize_email,
)

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        identity: Optional[ExternalIdentity] = None,
        refresh_token: Optional[RefreshToken] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_external_identity(
        self, provider: str, subject: str
    ) -> Optional[User]: ...

    def link_external_identity(
        self,
        user_id: str,
        identity: ExternalIdentity,
        *,
        refresh_token: Optional[RefreshToken] = None,
    ) -> User: ...

    def replace_refresh_token(self, user_id: str, record: RefreshToken) -> None: ...

    def rotate_refresh_token(
        self,
        token_hash: str,
        *,
        new_token_hash: str,
        issued_at: datetime,
        expires_at: datetime,
        now: datetime,
    ) -> Optional[RefreshToken]: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]: ...

    def list_active_refresh_tokens(
        self, user_id: str, now: datetime
    ) -> List[RefreshToken]: ...

    def verify_connection(self) -> None: ...


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


@dataclass(frozen=True)
class SessionTokens:
    """Everything a route needs to answer a successful sign-in."""

    user: User
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime


class AccountService:
    """Registration, sign-in and token rotation on top of a credential store.

    Every session-establishing operation ends in exactly one store write that
    both records any account change and installs the new refresh token, so a
    user never observes two active refresh tokens.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenProcessor,
        passwords: PasswordHasher,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.passwords = passwords
        self.logger = logger

    @contextlib.contextmanager
    def _store_call(self, operation: str) -> Iterator[None]:
        try:
            yield
        except StoreUnavailable as exc:
            self.logger.error("credential_store_unavailable", operation=operation)
            raise StoreUnavailableError() from exc

    def _session_for(self, user: User, refresh_value: str, refresh_expires_at: datetime) -> SessionTokens:
        access = self.tokens.issue_access_token(user)
        return SessionTokens(
            user=user,
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=refresh_value,
            refresh_expires_at=refresh_expires_at,
        )

    async def register(self, email: str, password: str) -> SessionTokens:
        normalized = normalize_email(email or "")
        if not normalized or "@" not in normalized:
            raise BadRequestError("a valid email is required", detail={"field": "email"})
        violations = self.passwords.check_policy(password or "")
        if violations:
            self.logger.info("registration_rejected_weak_password", violations=violations)
            raise WeakCredentialError(detail={"violations": violations})

        with self._store_call("register"):
            if self.store.get_user_by_email(normalized):
                raise DuplicateAccountError()
            password_hash = self.passwords.hash_password(password)
            issued = self.tokens.issue_refresh_token()
            try:
                user = self.store.create_user(
                    normalized,
                    password_hash,
                    refresh_token=issued.bind(""),
                )
            except ConstraintViolation as exc:
                # lost a race against a concurrent registration
                raise DuplicateAccountError() from exc

        self.logger.info("account_registered", user_id=user.id)
        return self._session_for(user, issued.value, issued.expires_at)

    async def login(self, email: str, password: str) -> SessionTokens:
        with self._store_call("login"):
            user = self.store.get_user_by_email(email or "")
        password_hash = user.password_hash if user else None
        # verify even without a user or hash so both failures take the same time
        if not self.passwords.verify_password(password_hash, password or "") or not user:
            self.logger.info(
                "login_failed",
                reason="unknown_user" if not user else "bad_password",
            )
            raise InvalidCredentialError()

        issued = self.tokens.issue_refresh_token()
        with self._store_call("login"):
            try:
                self.store.replace_refresh_token(user.id, issued.bind(user.id))
            except ConstraintViolation as exc:
                # account vanished between lookup and write
                raise InvalidCredentialError() from exc
        self.logger.info("login_succeeded", user_id=user.id)
        return self._session_for(user, issued.value, issued.expires_at)

    async def refresh(self, presented: Optional[str]) -> SessionTokens:
        if not presented:
            raise InvalidTokenError("invalid refresh token")
        token_hash = self.tokens.hash_refresh_token(presented)
        issued = self.tokens.issue_refresh_token()
        now = self.tokens.now()
        with self._store_call("refresh"):
            successor = self.store.rotate_refresh_token(
                token_hash,
                new_token_hash=issued.token_hash,
                issued_at=issued.issued_at,
                expires_at=issued.expires_at,
                now=now,
            )
            if successor is None:
                self._log_refresh_failure(token_hash, now)
                raise InvalidTokenError("invalid refresh token")
            user = self.store.get_user(successor.user_id)
        if user is None:
            self.logger.warning("refresh_token_orphaned", user_id=successor.user_id)
            raise InvalidTokenError("invalid refresh token")

        self.logger.info("refresh_token_rotated", user_id=user.id)
        return self._session_for(user, issued.value, issued.expires_at)

    def _log_refresh_failure(self, token_hash: str, now: datetime) -> None:
        record = self.store.get_refresh_token(token_hash)
        if record is None:
            self.logger.info("refresh_token_unknown")
        elif record.revoked_at is not None:
            self.logger.warning(
                "refresh_token_reuse_detected",
                user_id=record.user_id,
                replaced_by_present=record.replaced_by is not None,
            )
        elif record.expires_at <= now:
            self.logger.info("refresh_token_expired", user_id=record.user_id)
        else:
            self.logger.info("refresh_token_rejected", user_id=record.user_id)

    async def login_with_external_provider(
        self, claim: Optional[ExternalLoginClaim]
    ) -> SessionTokens:
        if claim is None:
            self.logger.info("external_login_failed", reason="handshake")
            raise ExternalAuthenticationFailedError()

        identity = ExternalIdentity(provider=claim.provider, subject=claim.subject)
        issued = self.tokens.issue_refresh_token()
        with self._store_call("external_login"):
            user = self.store.get_user_by_external_identity(claim.provider, claim.subject)
            if user:
                try:
                    self.store.replace_refresh_token(user.id, issued.bind(user.id))
                except ConstraintViolation as exc:
                    raise ExternalAuthenticationFailedError() from exc
                self.logger.info(
                    "external_login_succeeded", user_id=user.id, provider=claim.provider
                )
                return self._session_for(user, issued.value, issued.expires_at)

            if not claim.email_verified:
                self.logger.warning(
                    "external_login_failed",
                    reason="email_unverified",
                    provider=claim.provider,
                )
                raise ExternalAuthenticationFailedError()

            existing = self.store.get_user_by_email(claim.email)
            if existing:
                linked = existing.identity_for(claim.provider)
                if linked and linked.subject != claim.subject:
                    self.logger.warning(
                        "external_login_email_conflict",
                        user_id=existing.id,
                        provider=claim.provider,
                    )
                    raise EmailConflictError()
                try:
                    user = self.store.link_external_identity(
                        existing.id, identity, refresh_token=issued.bind(existing.id)
                    )
                except ConstraintViolation as exc:
                    raise EmailConflictError() from exc
                self.logger.info(
                    "external_login_linked", user_id=user.id, provider=claim.provider
                )
                return self._session_for(user, issued.value, issued.expires_at)

            try:
                user = self.store.create_user(
                    claim.email, None, identity=identity, refresh_token=issued.bind("")
                )
            except ConstraintViolation as exc:
                # a concurrent registration or external login took the email or subject
                raise EmailConflictError() from exc
        self.logger.info(
            "external_account_created", user_id=user.id, provider=claim.provider
        )
        return self._session_for(user, issued.value, issued.expires_at)

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        claims = self.tokens.validate_access_token(access_token)
        if claims is None:
            raise InvalidTokenError("not authenticated")
        return AuthContext(user_id=claims.subject, email=claims.email)

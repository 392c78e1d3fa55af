"""Unit tests for the account service.

Covers password registration and login, refresh token rotation and reuse,
external login precedence, and stateless access token authentication.
"""

import asyncio
import threading
from datetime import timedelta

import pytest

from tokengate.service.accounts import AccountService
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
from tokengate.storage.errors import StoreUnavailable
from tokengate.storage.memory import MemoryStore
from tokengate.storage.models import ExternalIdentity, utcnow

STRONG_PASSWORD = "Correct-Horse-9"


@pytest.fixture(scope="module")
def passwords():
    return PasswordHasher()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def service(store, passwords, settings):
    return AccountService(store, TokenProcessor(settings), passwords)


def _claim(subject="google-sub-1", email="ada@example.com", verified=True):
    return ExternalLoginClaim(
        provider="google", subject=subject, email=email, email_verified=verified
    )


class TestRegister:
    async def test_register_returns_session_and_persists_hash(self, service, store):
        tokens = await service.register("Ada@Example.com", STRONG_PASSWORD)

        user = store.get_user_by_email("ada@example.com")
        assert tokens.user.id == user.id
        assert user.password_hash and user.password_hash != STRONG_PASSWORD
        assert tokens.refresh_token
        active = store.list_active_refresh_tokens(user.id, utcnow())
        assert [r.token_hash for r in active] == [
            TokenProcessor.hash_refresh_token(tokens.refresh_token)
        ]
        assert len(store.users) == 1
        assert service.tokens.validate_access_token(tokens.access_token).subject == user.id

    async def test_register_twice_is_duplicate(self, service):
        await service.register("ada@example.com", STRONG_PASSWORD)

        with pytest.raises(DuplicateAccountError):
            await service.register("ADA@example.com", STRONG_PASSWORD)

    async def test_weak_password_lists_violations(self, service, store):
        with pytest.raises(WeakCredentialError) as excinfo:
            await service.register("ada@example.com", "password")

        assert "requires_digit" in excinfo.value.detail["violations"]
        assert store.get_user_by_email("ada@example.com") is None

    async def test_email_without_at_sign_is_rejected(self, service):
        with pytest.raises(BadRequestError):
            await service.register("not-an-email", STRONG_PASSWORD)


class TestLogin:
    async def test_login_rotates_refresh_token(self, service, store):
        registered = await service.register("ada@example.com", STRONG_PASSWORD)

        tokens = await service.login("ada@example.com", STRONG_PASSWORD)

        assert tokens.refresh_token != registered.refresh_token
        active = store.list_active_refresh_tokens(tokens.user.id, utcnow())
        assert len(active) == 1
        assert active[0].token_hash == TokenProcessor.hash_refresh_token(tokens.refresh_token)

    async def test_failures_are_indistinguishable(self, service, store):
        await service.register("ada@example.com", STRONG_PASSWORD)
        store.create_user("ext@example.com", None, identity=ExternalIdentity("google", "s"))

        messages = set()
        for email, password in [
            ("ada@example.com", "Wrong-Password-1"),
            ("nobody@example.com", STRONG_PASSWORD),
            ("ext@example.com", STRONG_PASSWORD),
        ]:
            with pytest.raises(InvalidCredentialError) as excinfo:
                await service.login(email, password)
            messages.add((excinfo.value.message, excinfo.value.error_code))

        assert messages == {("invalid credentials", "invalid_credential")}


class TestRefresh:
    async def test_refresh_issues_new_pair_and_revokes_old(self, service, store):
        registered = await service.register("ada@example.com", STRONG_PASSWORD)

        refreshed = await service.refresh(registered.refresh_token)

        assert refreshed.user.id == registered.user.id
        assert refreshed.refresh_token != registered.refresh_token
        old = store.get_refresh_token(TokenProcessor.hash_refresh_token(registered.refresh_token))
        assert old.revoked_at is not None
        assert old.replaced_by == TokenProcessor.hash_refresh_token(refreshed.refresh_token)

    async def test_replayed_token_is_rejected(self, service):
        registered = await service.register("ada@example.com", STRONG_PASSWORD)
        await service.refresh(registered.refresh_token)

        with pytest.raises(InvalidTokenError):
            await service.refresh(registered.refresh_token)

    async def test_token_superseded_by_login_is_rejected(self, service):
        registered = await service.register("ada@example.com", STRONG_PASSWORD)
        await service.login("ada@example.com", STRONG_PASSWORD)

        with pytest.raises(InvalidTokenError):
            await service.refresh(registered.refresh_token)

    async def test_concurrent_refresh_has_exactly_one_winner(self, service):
        registered = await service.register("ada@example.com", STRONG_PASSWORD)
        barrier = threading.Barrier(2)
        outcomes = []

        def present() -> None:
            barrier.wait()
            try:
                asyncio.run(service.refresh(registered.refresh_token))
                outcomes.append("ok")
            except InvalidTokenError:
                outcomes.append("invalid")

        threads = [threading.Thread(target=present) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == ["invalid", "ok"]

    @pytest.mark.parametrize("value", [None, "", "never-issued"])
    async def test_missing_or_unknown_token_is_rejected(self, service, value):
        with pytest.raises(InvalidTokenError):
            await service.refresh(value)

    async def test_expired_token_is_rejected(self, store, passwords, settings):
        processor = TokenProcessor(settings)
        service = AccountService(store, processor, passwords)
        registered = await service.register("ada@example.com", STRONG_PASSWORD)

        later = utcnow() + timedelta(minutes=settings.refresh_token_ttl_minutes)
        expired_service = AccountService(
            store, TokenProcessor(settings, clock=lambda: later), passwords
        )
        with pytest.raises(InvalidTokenError):
            await expired_service.refresh(registered.refresh_token)


class TestExternalLogin:
    async def test_failed_handshake(self, service):
        with pytest.raises(ExternalAuthenticationFailedError):
            await service.login_with_external_provider(None)

    async def test_first_login_creates_external_only_user(self, service, store):
        tokens = await service.login_with_external_provider(_claim())

        user = store.get_user_by_external_identity("google", "google-sub-1")
        assert user.id == tokens.user.id
        assert user.email == "ada@example.com"
        assert user.password_hash is None

    async def test_linked_identity_is_reused(self, service, store):
        first = await service.login_with_external_provider(_claim())
        # Email changed at the provider; the subject still identifies the user
        second = await service.login_with_external_provider(
            _claim(email="ada.lovelace@example.com", verified=False)
        )

        assert second.user.id == first.user.id
        assert len(store.users) == 1
        assert len(store.list_active_refresh_tokens(first.user.id, utcnow())) == 1

    async def test_existing_password_account_is_linked(self, service, store):
        registered = await service.register("ada@example.com", STRONG_PASSWORD)

        tokens = await service.login_with_external_provider(_claim())

        assert tokens.user.id == registered.user.id
        linked = store.get_user(registered.user.id)
        assert linked.identity_for("google").subject == "google-sub-1"
        assert linked.password_hash is not None
        # password login still works after linking
        await service.login("ada@example.com", STRONG_PASSWORD)

    async def test_unverified_email_cannot_link_or_create(self, service, store):
        await service.register("ada@example.com", STRONG_PASSWORD)

        with pytest.raises(ExternalAuthenticationFailedError):
            await service.login_with_external_provider(_claim(verified=False))
        with pytest.raises(ExternalAuthenticationFailedError):
            await service.login_with_external_provider(
                _claim(subject="other", email="new@example.com", verified=False)
            )
        assert store.get_user_by_email("new@example.com") is None

    async def test_email_owned_by_different_subject_conflicts(self, service, store):
        await service.login_with_external_provider(_claim(subject="google-sub-1"))

        with pytest.raises(EmailConflictError):
            await service.login_with_external_provider(_claim(subject="google-sub-2"))
        assert store.get_user_by_external_identity("google", "google-sub-2") is None


class TestAuthenticate:
    async def test_valid_access_token(self, service):
        tokens = await service.register("ada@example.com", STRONG_PASSWORD)

        ctx = await service.authenticate(tokens.access_token)

        assert ctx.user_id == tokens.user.id
        assert ctx.email == "ada@example.com"

    @pytest.mark.parametrize("token", [None, "", "garbage"])
    async def test_invalid_access_token(self, service, token):
        with pytest.raises(InvalidTokenError):
            await service.authenticate(token)


class UnavailableStore(MemoryStore):
    def get_user_by_email(self, email):
        raise StoreUnavailable("down")


async def test_store_outage_surfaces_as_unavailable(passwords, settings):
    service = AccountService(UnavailableStore(), TokenProcessor(settings), passwords)

    with pytest.raises(StoreUnavailableError):
        await service.login("ada@example.com", STRONG_PASSWORD)

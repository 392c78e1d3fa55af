from __future__ import annotations

import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode, urlparse

import httpx

from tokengate.config import Settings
from tokengate.logging import get_logger
from tokengate.service.errors import BadRequestError, ConfigurationError
from tokengate.storage.models import normalize_email, utcnow
from tokengate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://openidconnect.googleapis.com/v1/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
    "microsoft": {
        "auth_url": "https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
        "scope": "openid email profile User.Read",
    },
}

HTTP_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class ExternalLoginClaim:
    """Identity asserted by the provider after a successful handshake."""

    provider: str
    subject: str
    email: str
    email_verified: bool


class ExternalIdentityProvider:
    """Authorization-code login against one configured OpenID-style provider.

    Pending ``state`` values live in Redis when a cache is configured so any
    worker can finish the handshake; otherwise they stay in this process.
    """

    def __init__(
        self,
        settings: Settings,
        cache: Optional[RedisCache] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.provider = settings.oauth_provider
        if self.provider not in OAUTH_PROVIDERS:
            raise ConfigurationError(f"unsupported OAuth provider: {self.provider}")
        if not settings.oauth_client_id or not settings.oauth_client_secret:
            raise ConfigurationError("OAuth client credentials are required")
        self.config = OAUTH_PROVIDERS[self.provider]
        self.client_id = settings.oauth_client_id
        self.client_secret = settings.oauth_client_secret
        self.redirect_uri = settings.oauth_redirect_uri
        self.allowed_return_origins = {
            origin.rstrip("/") for origin in settings.allowed_return_origins
        }
        self.state_ttl = timedelta(minutes=settings.oauth_state_ttl_minutes)
        self.cache = cache
        self.transport = transport
        self._state_lock = threading.Lock()
        self._states: Dict[str, Tuple[str, str, datetime]] = {}

    def validate_return_url(self, return_url: str) -> str:
        """Allow same-site paths or absolute URLs on a configured origin only."""
        if not return_url:
            raise BadRequestError("returnUrl is required")
        if return_url.startswith("/") and not return_url.startswith("//") and "\\" not in return_url:
            return return_url
        parsed = urlparse(return_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise BadRequestError("returnUrl is not allowed")
        origin = f"{parsed.scheme}://{parsed.netloc}".lower()
        if origin not in {o.lower() for o in self.allowed_return_origins}:
            logger.warning("external_login_return_url_rejected", origin=origin)
            raise BadRequestError("returnUrl is not allowed")
        return return_url

    def _prune_states(self, now: datetime) -> None:
        expired = [key for key, (_, _, exp) in self._states.items() if exp <= now]
        for key in expired:
            self._states.pop(key, None)

    async def start(self, return_url: str) -> str:
        """Record a fresh state bound to ``return_url`` and build the provider URL."""
        return_url = self.validate_return_url(return_url)
        state = secrets.token_urlsafe(32)
        now = utcnow()
        expires_at = now + self.state_ttl
        if self.cache:
            await self.cache.set_oauth_state(state, self.provider, return_url, expires_at)
        else:
            with self._state_lock:
                self._prune_states(now)
                self._states[state] = (self.provider, return_url, expires_at)

        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.config["scope"],
            "state": state,
        }
        if self.provider == "google":
            params["prompt"] = "select_account"
        logger.info("external_login_started", provider=self.provider)
        return f"{self.config['auth_url']}?{urlencode(params)}"

    async def _pop_state(self, state: str) -> Optional[Tuple[str, str, datetime]]:
        if self.cache:
            return await self.cache.pop_oauth_state(state)
        with self._state_lock:
            return self._states.pop(state, None)

    async def complete(
        self, code: Optional[str], state: Optional[str], *, error: Optional[str] = None
    ) -> Tuple[Optional[ExternalLoginClaim], Optional[str]]:
        """Finish the handshake.

        Returns ``(claim, return_url)``. ``claim`` is ``None`` whenever the
        handshake did not succeed; ``return_url`` is ``None`` when the state
        itself was unknown or expired.
        """
        if not state:
            return None, None
        stored = await self._pop_state(state)
        if not stored:
            logger.warning("external_login_state_unknown", provider=self.provider)
            return None, None
        provider, return_url, expires_at = stored
        if provider != self.provider or expires_at <= utcnow():
            logger.warning("external_login_state_expired", provider=provider)
            return None, None
        if error or not code:
            logger.warning("external_login_denied", provider=provider, error=error)
            return None, return_url
        claim = await self._exchange_code(code)
        return claim, return_url

    async def _exchange_code(self, code: str) -> Optional[ExternalLoginClaim]:
        token_data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        try:
            async with httpx.AsyncClient(
                timeout=HTTP_TIMEOUT_SECONDS,
                follow_redirects=False,
                transport=self.transport,
            ) as client:
                token_response = await client.post(
                    self.config["token_url"],
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=self.provider)
                    return None

                headers = {"Authorization": f"Bearer {access_token}"}
                if self.provider == "github":
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    self.config["userinfo_url"], headers=headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=self.provider)
                    return None

                emails: Optional[list] = None
                if self.provider == "github":
                    emails_response = await client.get(
                        self.config["emails_url"], headers=headers
                    )
                    if emails_response.status_code == 200:
                        emails = emails_response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=self.provider,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=self.provider, error=str(exc))
            return None

        claim = self._parse_userinfo(userinfo, emails)
        if claim is None:
            logger.error("oauth_identity_incomplete", provider=self.provider)
            return None
        logger.info(
            "oauth_exchange_success",
            provider=self.provider,
            subject=claim.subject,
            email_verified=claim.email_verified,
        )
        return claim

    def _parse_userinfo(
        self, userinfo: Dict[str, Any], emails: Optional[list] = None
    ) -> Optional[ExternalLoginClaim]:
        """Map a provider's userinfo document onto an ``ExternalLoginClaim``."""
        subject: Any = None
        email: Optional[str] = None
        verified = False
        if self.provider == "google":
            subject = userinfo.get("sub") or userinfo.get("id")
            email = userinfo.get("email")
            verified = bool(
                userinfo.get("email_verified", userinfo.get("verified_email", False))
            )
        elif self.provider == "github":
            subject = userinfo.get("id")
            primary = next(
                (
                    entry
                    for entry in emails or []
                    if isinstance(entry, dict) and entry.get("primary") and entry.get("verified")
                ),
                None,
            )
            if primary:
                email, verified = primary.get("email"), True
            else:
                email = userinfo.get("email")
        elif self.provider == "microsoft":
            subject = userinfo.get("id")
            # ``mail`` is directory-managed; a bare UPN is not proof of mailbox ownership
            email = userinfo.get("mail")
            verified = bool(email)
            email = email or userinfo.get("userPrincipalName")
        if subject in (None, "") or not email:
            return None
        return ExternalLoginClaim(
            provider=self.provider,
            subject=str(subject),
            email=normalize_email(email),
            email_verified=verified,
        )

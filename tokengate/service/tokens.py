from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from tokengate.config import MIN_JWT_SECRET_LENGTH, Settings
from tokengate.logging import get_logger
from tokengate.service.errors import ConfigurationError
from tokengate.storage.models import RefreshToken, User, utcnow

logger = get_logger(__name__)

Clock = Callable[[], datetime]

# 64 random bytes -> 512 bits of entropy per refresh token
REFRESH_TOKEN_BYTES = 64


@dataclass(frozen=True)
class AccessToken:
    token: str
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class IssuedRefreshToken:
    """A freshly minted refresh token; ``value`` goes to the client only."""

    value: str
    token_hash: str
    issued_at: datetime
    expires_at: datetime

    def bind(self, user_id: str) -> RefreshToken:
        return RefreshToken(
            token_hash=self.token_hash,
            user_id=user_id,
            issued_at=self.issued_at,
            expires_at=self.expires_at,
        )


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def email(self) -> Optional[str]:
        return self.claims.get("email")


class TokenProcessor:
    """Mints and validates HS256 access tokens and opaque refresh tokens.

    Holds no mutable state: the signing key is read once at construction and
    the clock is injectable so expiry can be tested deterministically.
    """

    algorithm = "HS256"

    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        secret = settings.jwt_secret
        if not secret or len(secret) < MIN_JWT_SECRET_LENGTH:
            raise ConfigurationError("a signing secret of sufficient length is required")
        self._key = secret.encode()
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)
        self._clock = clock or utcnow

    def now(self) -> datetime:
        current = self._clock()
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return current

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": self.algorithm, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_access_token(self, user: User) -> AccessToken:
        now = self.now()
        exp = int((now + self.access_ttl).timestamp())
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
            "email": user.email,
            "token_type": "access",
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": exp,
        }
        return AccessToken(
            token=self._encode_jwt(payload),
            jti=jti,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )

    @staticmethod
    def hash_refresh_token(value: str) -> str:
        return hashlib.sha256(value.encode()).hexdigest()

    def issue_refresh_token(self) -> IssuedRefreshToken:
        now = self.now()
        value = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
        return IssuedRefreshToken(
            value=value,
            token_hash=self.hash_refresh_token(value),
            issued_at=now,
            expires_at=now + self.refresh_ttl,
        )

    def validate_access_token(self, token: Optional[str]) -> Optional[TokenClaims]:
        """Return the token's claims, or ``None`` for any kind of invalid token.

        Tampered, expired, wrong-issuer and wrong-audience tokens are all
        reported the same way so callers cannot act as a validity oracle.
        """
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.debug("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != self.algorithm:
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # cookies arrive latin-1 decoded; compare bytes so non-ASCII input is a mismatch
        if not hmac.compare_digest(
            expected_sig.encode("ascii"), sig_b64.encode("utf-8", "surrogatepass")
        ):
            logger.debug("jwt_signature_mismatch")
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_payload_decode_failed")
            return None
        if not isinstance(payload, dict):
            return None

        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        if payload.get("token_type") != "access":
            return None
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        if self.now().timestamp() >= exp_ts:
            logger.debug("jwt_expired")
            return None
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            return None
        return TokenClaims(subject=subject, claims=payload)

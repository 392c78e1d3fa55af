from __future__ import annotations

from typing import List, Optional

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHashError, VerificationError

from tokengate.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


class PasswordHasher:
    """Salted argon2id hashing plus the account password policy."""

    def __init__(self) -> None:
        self._hasher = Argon2Hasher(type=Type.ID)
        # Verified when the account is missing so both login failures cost the same
        self._dummy_hash = self._hasher.hash("tokengate-timing-equalizer")

    def hash_password(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify_password(self, password_hash: Optional[str], password: str) -> bool:
        if not password_hash:
            self._burn(password)
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerificationError:
            return False
        except InvalidHashError:
            logger.warning("password_hash_invalid")
            return False

    def _burn(self, password: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    @staticmethod
    def check_policy(password: str) -> List[str]:
        """Return the names of the policy rules ``password`` violates."""
        violations: List[str] = []
        if len(password) < MIN_PASSWORD_LENGTH:
            violations.append("too_short")
        if len(password) > MAX_PASSWORD_LENGTH:
            violations.append("too_long")
        if not any(c.isdigit() for c in password):
            violations.append("requires_digit")
        if not any(c.islower() for c in password):
            violations.append("requires_lowercase")
        if not any(c.isupper() for c in password):
            violations.append("requires_uppercase")
        if all(c.isalnum() for c in password):
            violations.append("requires_non_alphanumeric")
        return violations

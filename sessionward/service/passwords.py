from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from sessionward.config import Settings
from sessionward.logging import get_logger
from sessionward.service.errors import WeakPasswordError

logger = get_logger(__name__)

SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'
_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")


class CredentialHasher:
    """argon2id hashing for stored passwords."""

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # Fixed hash for timing-equalized checks against unknown accounts
        self._dummy_hash = self._pwd_hasher.hash("sessionward-dummy-password")

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialHasher":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(plaintext)

    def verify(self, plaintext: str, stored_hash: str) -> bool:
        """Check ``plaintext`` against ``stored_hash``; malformed hashes verify False."""
        try:
            return self._pwd_hasher.verify(stored_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as exc:
            logger.error("password_hash_invalid", error_type=type(exc).__name__)
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(stored_hash)
        except InvalidHashError:
            return True

    def dummy_verify(self, plaintext: str) -> None:
        self.verify(plaintext, self._dummy_hash)


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_digit: bool = True
    require_special: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.password_min_length,
            require_uppercase=settings.password_require_uppercase,
            require_lowercase=settings.password_require_lowercase,
            require_digit=settings.password_require_digit,
            require_special=settings.password_require_special,
        )

    def violations(self, password: str) -> List[str]:
        """Every rule the password breaks, in a stable order."""
        reasons: List[str] = []
        if len(password) < self.min_length:
            reasons.append(
                f"Password must be at least {self.min_length} characters long"
            )
        if self.require_uppercase and not re.search(r"[A-Z]", password):
            reasons.append("Password must contain at least one uppercase letter")
        if self.require_lowercase and not re.search(r"[a-z]", password):
            reasons.append("Password must contain at least one lowercase letter")
        if self.require_digit and not re.search(r"\d", password):
            reasons.append("Password must contain at least one number")
        if self.require_special and not _SPECIAL_RE.search(password):
            reasons.append("Password must contain at least one special character")
        return reasons

    def enforce(self, password: str) -> None:
        reasons = self.violations(password)
        if reasons:
            raise WeakPasswordError(reasons)

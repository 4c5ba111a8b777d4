"""Helpers shared between the memory and postgres stores.

Both backends persist token fingerprints instead of raw token values, and
encrypt TOTP secrets with the same Fernet key derivation, so a principal's
state can move between backends without re-enrollment.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from typing import Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from sessionward.logging import get_logger
from sessionward.storage.errors import StorageUnavailable

logger = get_logger(__name__)

ONE_TIME_TOKEN_BYTES = 32


def token_fingerprint(token: str) -> str:
    """sha256 hex digest used as the storage key for any bearer value."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_opaque_token() -> str:
    return secrets.token_urlsafe(ONE_TIME_TOKEN_BYTES)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_code_set(codes: Iterable[str]) -> List[str]:
    """Canonical ordering for recovery-code hash lists so equality checks are stable."""
    return sorted(set(codes))


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


class SecretCipher:
    """Fernet wrapper for TOTP secrets stored at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("cipher key material must be non-empty")
        self._fernet = Fernet(derive_cipher_key(key_material))

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            # A key rotation without re-encryption leaves the credential unusable
            logger.error("mfa_secret_decrypt_failed", error_type=type(exc).__name__)
            raise StorageUnavailable("stored TOTP secret cannot be decrypted") from exc

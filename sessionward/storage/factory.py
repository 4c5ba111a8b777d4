from __future__ import annotations

from typing import Optional

from sessionward.config import Settings, StorageBackend
from sessionward.logging import get_logger
from sessionward.storage.base import SessionStore
from sessionward.storage.memory import MemoryStore
from sessionward.timeutil import Clock

logger = get_logger(__name__)


def mfa_key_material(settings: Settings) -> str:
    return settings.mfa_encryption_key or settings.jwt_secret


def create_store(settings: Settings, *, clock: Optional[Clock] = None) -> SessionStore:
    """Build the storage backend named by ``settings.storage_backend``."""

    key = mfa_key_material(settings)
    if not settings.mfa_encryption_key:
        logger.warning(
            "mfa_key_derived_from_jwt_secret",
            message="MFA_ENCRYPTION_KEY not set; rotating JWT_SECRET will orphan enrolled TOTP secrets",
        )
    if settings.storage_backend == StorageBackend.POSTGRES:
        from sessionward.storage.postgres import PostgresStore

        return PostgresStore(
            settings.database_url,
            mfa_encryption_key=key,
            min_size=settings.database_pool_min,
            max_size=settings.database_pool_max,
            timeout=settings.storage_timeout_seconds,
            clock=clock,
        )
    return MemoryStore(mfa_encryption_key=key, clock=clock)

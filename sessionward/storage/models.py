from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sessionward.timeutil import utc_now


@dataclass
class Principal:
    id: str
    email: str
    password_hash: str
    roles: List[str] = field(default_factory=list)
    tenant_id: str = "public"
    is_active: bool = True
    email_verified: bool = False
    created_at: datetime = field(default_factory=utc_now)
    last_login_at: Optional[datetime] = None


@dataclass
class Role:
    id: str
    name: str
    permissions: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class TwoFactorCredential:
    """Per-principal TOTP state.

    ``secret`` is the plaintext base32 secret once read back from a store;
    stores encrypt it at rest. ``recovery_codes`` holds sha256 hashes only.
    """

    subject_id: str
    secret: Optional[str]
    recovery_codes: List[str] = field(default_factory=list)
    enabled_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return bool(self.secret)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


# Fields callers may patch through ``update_principal``
PRINCIPAL_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "password_hash",
        "roles",
        "tenant_id",
        "is_active",
        "email_verified",
        "last_login_at",
    }
)

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable, List, Optional, Protocol

from sessionward.storage.models import IssuedToken, Principal, Role, TwoFactorCredential


class SessionStore(Protocol):
    """Storage contract consumed by the session engine.

    Implementations are synchronous; the service layer offloads every call to a
    worker thread. ``redeem_*`` methods must consume the record atomically so that
    concurrent redemptions of one token succeed at most once. Backend outages
    surface as ``StorageUnavailable``.
    """

    # principals
    def create_principal(
        self,
        email: str,
        password_hash: str,
        *,
        roles: Iterable[str],
        tenant_id: str = "public",
        is_active: bool = True,
        email_verified: bool = False,
    ) -> Principal: ...

    def get_principal_by_id(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def update_principal(self, principal_id: str, **patch: Any) -> Optional[Principal]: ...

    def delete_principal(self, principal_id: str) -> bool: ...

    # roles
    def create_role(self, name: str, permissions: Iterable[str] = ()) -> Role: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def list_roles(self) -> List[Role]: ...

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        permissions: Optional[Iterable[str]] = None,
    ) -> Optional[Role]: ...

    def delete_role(self, role_id: str) -> bool: ...

    # single-use tokens
    def issue_one_time_token(
        self, subject_id: str, purpose: str, ttl: timedelta
    ) -> IssuedToken: ...

    def redeem_one_time_token(self, token: str, purpose: str) -> str: ...

    def store_refresh_token(
        self, subject_id: str, token: str, expires_at: datetime
    ) -> None: ...

    def redeem_refresh_token(self, token: str) -> str: ...

    def rotate_refresh_token(
        self, token: str, subject_id: str, replacement: str, expires_at: datetime
    ) -> str: ...

    def delete_refresh_token(self, token: str) -> bool: ...

    def delete_all_refresh_tokens_for(self, subject_id: str) -> int: ...

    # revocation
    def blacklist(self, token: str, ttl: timedelta) -> None: ...

    def is_blacklisted(self, token: str) -> bool: ...

    # second factor
    def get_two_factor(self, subject_id: str) -> Optional[TwoFactorCredential]: ...

    def set_two_factor(
        self, subject_id: str, secret: str, recovery_codes: Iterable[str]
    ) -> TwoFactorCredential: ...

    def swap_recovery_codes(
        self, subject_id: str, expected: Iterable[str], replacement: Iterable[str]
    ) -> bool: ...

    def clear_two_factor(self, subject_id: str) -> None: ...

    # maintenance
    def purge_expired(self, now: Optional[datetime] = None) -> int: ...

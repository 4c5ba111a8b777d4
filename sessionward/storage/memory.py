from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sessionward.logging import get_logger, token_prefix
from sessionward.storage.common import (
    SecretCipher,
    generate_opaque_token,
    normalize_code_set,
    normalize_email,
    token_fingerprint,
)
from sessionward.storage.errors import ConstraintViolation, TokenExpired, TokenNotFound
from sessionward.storage.models import (
    PRINCIPAL_MUTABLE_FIELDS,
    IssuedToken,
    Principal,
    Role,
    TwoFactorCredential,
)
from sessionward.timeutil import Clock, utc_now


@dataclass
class _TokenRecord:
    subject_id: str
    expires_at: datetime
    purpose: Optional[str] = None


class MemoryStore:
    """In-process store for tests and single-node development.

    Every map is guarded by one re-entrant lock; redemption pops the record
    under that lock, which gives the same single-consumer guarantee as the
    postgres ``DELETE ... RETURNING`` path.
    """

    def __init__(
        self, *, mfa_encryption_key: str, clock: Optional[Clock] = None
    ) -> None:
        self.logger = get_logger(__name__)
        self._clock: Clock = clock or utc_now
        self._cipher = SecretCipher(mfa_encryption_key)
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.principals: Dict[str, Principal] = {}
        self._email_index: Dict[str, str] = {}
        self.roles: Dict[str, Role] = {}
        self.one_time_tokens: Dict[str, _TokenRecord] = {}
        self.refresh_tokens: Dict[str, _TokenRecord] = {}
        self.blacklisted: Dict[str, datetime] = {}
        self.two_factor: Dict[str, TwoFactorCredential] = {}

    # ------------------------------------------------------------------
    # principals
    # ------------------------------------------------------------------
    def create_principal(
        self,
        email: str,
        password_hash: str,
        *,
        roles: Iterable[str],
        tenant_id: str = "public",
        is_active: bool = True,
        email_verified: bool = False,
    ) -> Principal:
        normalized = normalize_email(email)
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                roles=list(dict.fromkeys(roles)),
                tenant_id=tenant_id,
                is_active=is_active,
                email_verified=email_verified,
                created_at=self._clock(),
            )
            self.principals[principal.id] = principal
            self._email_index[normalized] = principal.id
            return replace(principal, roles=list(principal.roles))

    def get_principal_by_id(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return replace(principal, roles=list(principal.roles)) if principal else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._data_lock:
            principal_id = self._email_index.get(normalize_email(email))
            if principal_id is None:
                return None
            return self.get_principal_by_id(principal_id)

    def update_principal(self, principal_id: str, **patch: Any) -> Optional[Principal]:
        unknown = set(patch) - PRINCIPAL_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported principal fields: {sorted(unknown)}")
        with self._data_lock:
            current = self.principals.get(principal_id)
            if current is None:
                return None
            if "email" in patch:
                new_email = normalize_email(patch["email"])
                owner = self._email_index.get(new_email)
                if owner is not None and owner != principal_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                patch["email"] = new_email
            if "roles" in patch:
                patch["roles"] = list(dict.fromkeys(patch["roles"]))
            updated = replace(current, **patch)
            if updated.email != current.email:
                self._email_index.pop(current.email, None)
                self._email_index[updated.email] = principal_id
            self.principals[principal_id] = updated
            return replace(updated, roles=list(updated.roles))

    def delete_principal(self, principal_id: str) -> bool:
        with self._data_lock:
            principal = self.principals.pop(principal_id, None)
            if principal is None:
                return False
            self._email_index.pop(principal.email, None)
            self.two_factor.pop(principal_id, None)
            self.delete_all_refresh_tokens_for(principal_id)
            for key in [
                k for k, rec in self.one_time_tokens.items() if rec.subject_id == principal_id
            ]:
                self.one_time_tokens.pop(key, None)
            return True

    # ------------------------------------------------------------------
    # roles
    # ------------------------------------------------------------------
    def create_role(self, name: str, permissions: Iterable[str] = ()) -> Role:
        with self._data_lock:
            if self._role_id_for_name(name) is not None:
                raise ConstraintViolation("role name already exists", {"field": "name"})
            role = Role(
                id=str(uuid.uuid4()),
                name=name,
                permissions=list(dict.fromkeys(permissions)),
                created_at=self._clock(),
            )
            self.roles[role.id] = role
            return replace(role, permissions=list(role.permissions))

    def _role_id_for_name(self, name: str) -> Optional[str]:
        for role in self.roles.values():
            if role.name == name:
                return role.id
        return None

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role, permissions=list(role.permissions)) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            role_id = self._role_id_for_name(name)
            return self.get_role(role_id) if role_id else None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return sorted(
                (replace(r, permissions=list(r.permissions)) for r in self.roles.values()),
                key=lambda r: r.name,
            )

    def update_role(
        self,
        role_id: str,
        *,
        name: Optional[str] = None,
        permissions: Optional[Iterable[str]] = None,
    ) -> Optional[Role]:
        with self._data_lock:
            current = self.roles.get(role_id)
            if current is None:
                return None
            updated = current
            if name is not None and name != current.name:
                if self._role_id_for_name(name) is not None:
                    raise ConstraintViolation("role name already exists", {"field": "name"})
                updated = replace(updated, name=name)
            if permissions is not None:
                updated = replace(updated, permissions=list(dict.fromkeys(permissions)))
            self.roles[role_id] = updated
            return replace(updated, permissions=list(updated.permissions))

    def delete_role(self, role_id: str) -> bool:
        with self._data_lock:
            return self.roles.pop(role_id, None) is not None

    # ------------------------------------------------------------------
    # one-time and refresh tokens
    # ------------------------------------------------------------------
    def issue_one_time_token(
        self, subject_id: str, purpose: str, ttl: timedelta
    ) -> IssuedToken:
        token = generate_opaque_token()
        expires_at = self._clock() + ttl
        with self._data_lock:
            self.one_time_tokens[token_fingerprint(token)] = _TokenRecord(
                subject_id=subject_id, expires_at=expires_at, purpose=purpose
            )
        return IssuedToken(token=token, expires_at=expires_at)

    def redeem_one_time_token(self, token: str, purpose: str) -> str:
        key = token_fingerprint(token)
        with self._data_lock:
            record = self.one_time_tokens.get(key)
            if record is None or record.purpose != purpose:
                raise TokenNotFound(purpose)
            del self.one_time_tokens[key]
        if self._clock() >= record.expires_at:
            self.logger.info(
                "one_time_token_expired", purpose=purpose, token_prefix=token_prefix(token)
            )
            raise TokenExpired(purpose)
        return record.subject_id

    def store_refresh_token(
        self, subject_id: str, token: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            self.refresh_tokens[token_fingerprint(token)] = _TokenRecord(
                subject_id=subject_id, expires_at=expires_at
            )

    def redeem_refresh_token(self, token: str) -> str:
        with self._data_lock:
            record = self.refresh_tokens.pop(token_fingerprint(token), None)
        if record is None:
            raise TokenNotFound("refresh")
        if self._clock() >= record.expires_at:
            raise TokenExpired("refresh")
        return record.subject_id

    def rotate_refresh_token(
        self, token: str, subject_id: str, replacement: str, expires_at: datetime
    ) -> str:
        """Consume ``token`` and store ``replacement`` in one step.

        The replacement is only written when the consumed record is live and
        belongs to ``subject_id``; the stored subject is returned either way.
        """
        with self._data_lock:
            record = self.refresh_tokens.pop(token_fingerprint(token), None)
            if record is None:
                raise TokenNotFound("refresh")
            if self._clock() >= record.expires_at:
                raise TokenExpired("refresh")
            if record.subject_id == subject_id:
                self.refresh_tokens[token_fingerprint(replacement)] = _TokenRecord(
                    subject_id=subject_id, expires_at=expires_at
                )
        return record.subject_id

    def delete_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            return self.refresh_tokens.pop(token_fingerprint(token), None) is not None

    def delete_all_refresh_tokens_for(self, subject_id: str) -> int:
        with self._data_lock:
            keys = [k for k, rec in self.refresh_tokens.items() if rec.subject_id == subject_id]
            for key in keys:
                del self.refresh_tokens[key]
            return len(keys)

    # ------------------------------------------------------------------
    # blacklist
    # ------------------------------------------------------------------
    def blacklist(self, token: str, ttl: timedelta) -> None:
        if ttl.total_seconds() <= 0:
            return
        with self._data_lock:
            self.blacklisted[token_fingerprint(token)] = self._clock() + ttl

    def is_blacklisted(self, token: str) -> bool:
        key = token_fingerprint(token)
        with self._data_lock:
            expires_at = self.blacklisted.get(key)
            if expires_at is None:
                return False
            if self._clock() >= expires_at:
                del self.blacklisted[key]
                return False
            return True

    # ------------------------------------------------------------------
    # second factor
    # ------------------------------------------------------------------
    def get_two_factor(self, subject_id: str) -> Optional[TwoFactorCredential]:
        with self._data_lock:
            stored = self.two_factor.get(subject_id)
            if stored is None:
                return None
            return TwoFactorCredential(
                subject_id=subject_id,
                secret=self._cipher.decrypt(stored.secret),
                recovery_codes=list(stored.recovery_codes),
                enabled_at=stored.enabled_at,
            )

    def set_two_factor(
        self, subject_id: str, secret: str, recovery_codes: Iterable[str]
    ) -> TwoFactorCredential:
        codes = normalize_code_set(recovery_codes)
        with self._data_lock:
            if subject_id not in self.principals:
                raise ConstraintViolation("principal not found for mfa", {"subject_id": subject_id})
            enabled_at = self._clock()
            self.two_factor[subject_id] = TwoFactorCredential(
                subject_id=subject_id,
                secret=self._cipher.encrypt(secret),
                recovery_codes=codes,
                enabled_at=enabled_at,
            )
        return TwoFactorCredential(
            subject_id=subject_id, secret=secret, recovery_codes=codes, enabled_at=enabled_at
        )

    def swap_recovery_codes(
        self, subject_id: str, expected: Iterable[str], replacement: Iterable[str]
    ) -> bool:
        with self._data_lock:
            stored = self.two_factor.get(subject_id)
            if stored is None or stored.recovery_codes != normalize_code_set(expected):
                return False
            stored.recovery_codes = normalize_code_set(replacement)
            return True

    def clear_two_factor(self, subject_id: str) -> None:
        with self._data_lock:
            self.two_factor.pop(subject_id, None)

    # ------------------------------------------------------------------
    # maintenance
    # ------------------------------------------------------------------
    def purge_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = now or self._clock()
        removed = 0
        with self._data_lock:
            for table in (self.one_time_tokens, self.refresh_tokens):
                for key in [k for k, rec in table.items() if rec.expires_at <= cutoff]:
                    del table[key]
                    removed += 1
            for key in [k for k, exp in self.blacklisted.items() if exp <= cutoff]:
                del self.blacklisted[key]
                removed += 1
        return removed

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, List, Optional, Sequence, TypeVar

from sessionward.config import Settings
from sessionward.logging import email_hash, get_logger, token_prefix
from sessionward.service import totp
from sessionward.service.concurrency import run_blocking
from sessionward.service.errors import (
    AccessDeniedError,
    AccountInactiveError,
    EmailInUseError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotVerifiedError,
    TokenExpiredError,
    UnavailableError,
    UserNotFoundError,
)
from sessionward.service.notifier import Notifier, NullNotifier
from sessionward.service.one_time import OneTimeTokens, TokenPurpose
from sessionward.service.passwords import CredentialHasher, PasswordPolicy
from sessionward.service.rbac import has_all_roles, has_any_role
from sessionward.service.roles import load_admin
from sessionward.service.tokens import (
    TokenClaims,
    TokenCodec,
    TokenFailure,
    TokenType,
    TokenVerificationError,
)
from sessionward.storage.base import SessionStore
from sessionward.storage.common import normalize_email
from sessionward.storage.errors import (
    ConstraintViolation,
    StorageUnavailable,
    TokenExpired,
    TokenNotFound,
)
from sessionward.storage.models import IssuedToken, Principal, TwoFactorCredential
from sessionward.storage.redis_cache import RedisCache
from sessionward.timeutil import Clock, utc_now

logger = get_logger(__name__)

T = TypeVar("T")

# Concurrent recovery-code use can lose the compare-and-swap; retry a few times
_RECOVERY_SWAP_ATTEMPTS = 3


class _RotationHandoff:
    """Passes a rotation result from a worker thread to a caller that may stop waiting."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._abandoned = False
        self._delivered: Optional[str] = None

    def deliver(self, subject_id: str) -> bool:
        with self._lock:
            if self._abandoned:
                return False
            self._delivered = subject_id
            return True

    def abandon(self) -> Optional[str]:
        with self._lock:
            self._abandoned = True
            return self._delivered


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class LoginResult:
    principal: Principal
    tokens: Optional[TokenPair] = None
    mfa_required: bool = False
    pending_token: Optional[str] = None


@dataclass(frozen=True)
class RegistrationResult:
    principal: Principal
    tokens: TokenPair
    verification_issued: bool = False


@dataclass(frozen=True)
class AuthContext:
    principal_id: str
    roles: tuple
    tenant_id: str
    token_id: str
    expires_at: datetime
    principal: Principal = field(repr=False, compare=False)


@dataclass(frozen=True)
class TwoFactorEnrollment:
    """Unsaved enrollment material; nothing is persisted until confirmation."""

    secret: str
    provisioning_uri: str
    recovery_codes: List[str]


@dataclass(frozen=True)
class TwoFactorStatus:
    enabled: bool
    recovery_codes_remaining: int = 0


class SessionService:
    """Registration, login, token rotation, revocation, resets and 2FA.

    Every operation re-reads state from the store; nothing about principals or
    tokens is cached in-process between calls, so several instances can share
    one backend.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        notifier: Optional[Notifier] = None,
        cache: Optional[RedisCache] = None,
        hasher: Optional[CredentialHasher] = None,
        codec: Optional[TokenCodec] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self.notifier: Notifier = notifier or NullNotifier()
        self._clock: Clock = clock or utc_now
        self.hasher = hasher or CredentialHasher.from_settings(settings)
        self.codec = codec or TokenCodec.from_settings(settings, clock=self._clock)
        self.policy = PasswordPolicy.from_settings(settings)
        self.one_time = OneTimeTokens.from_settings(store, settings)
        self.logger = logger
        self._last_cleanup = self._clock()

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------
    async def _store(self, func: Callable[..., T], *args: Any, operation: str, **kwargs: Any) -> T:
        return await run_blocking(
            func, *args, timeout=self.settings.storage_timeout_seconds, operation=operation, **kwargs
        )

    async def _hash(self, password: str) -> str:
        return await run_blocking(
            self.hasher.hash,
            password,
            timeout=self.settings.hash_timeout_seconds,
            operation="hash_password",
        )

    async def _verify_password(self, password: str, stored_hash: str) -> bool:
        return await run_blocking(
            self.hasher.verify,
            password,
            stored_hash,
            timeout=self.settings.hash_timeout_seconds,
            operation="verify_password",
        )

    async def _cache_call(self, coro: Any, operation: str) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self.settings.storage_timeout_seconds)
        except (asyncio.TimeoutError, StorageUnavailable) as exc:
            self.logger.error("cache_unavailable", operation=operation, error=str(exc))
            raise UnavailableError(detail={"operation": operation}) from exc

    async def _blacklist(self, token: str, ttl: timedelta) -> None:
        if ttl.total_seconds() <= 0:
            return
        if self.cache is not None:
            await self._cache_call(
                self.cache.blacklist_access_token(token, ttl), "blacklist"
            )
        else:
            await self._store(self.store.blacklist, token, ttl, operation="blacklist")

    async def _is_blacklisted(self, token: str) -> bool:
        if self.cache is not None:
            return await self._cache_call(
                self.cache.is_access_token_blacklisted(token), "is_blacklisted"
            )
        return await self._store(self.store.is_blacklisted, token, operation="is_blacklisted")

    async def _notify(self, method: str, principal: Principal, token: str) -> None:
        try:
            await asyncio.to_thread(getattr(self.notifier, method), principal, token)
        except Exception as exc:
            # Delivery problems must not change what the caller sees
            self.logger.error(
                "notification_failed",
                kind=method,
                principal_id=principal.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def _issue_one_time(self, principal: Principal, purpose: TokenPurpose) -> IssuedToken:
        issued = await self._store(
            self.one_time.issue, principal.id, purpose, operation="issue_one_time_token"
        )
        method = (
            "send_verification"
            if purpose == TokenPurpose.EMAIL_VERIFICATION
            else "send_password_reset"
        )
        await self._notify(method, principal, issued.token)
        return issued

    async def _redeem_one_time(self, token: str, purpose: TokenPurpose) -> str:
        try:
            return await self._store(
                self.one_time.redeem, token, purpose, operation="redeem_one_time_token"
            )
        except TokenNotFound as exc:
            self.logger.warning(
                "one_time_token_invalid", purpose=purpose.value, token_prefix=token_prefix(token)
            )
            raise InvalidTokenError() from exc
        except TokenExpired as exc:
            raise TokenExpiredError() from exc

    def _verify_token(self, token: str, expected: TokenType) -> TokenClaims:
        try:
            return self.codec.verify(token, expected)
        except TokenVerificationError as exc:
            self.logger.info(
                "token_rejected",
                expected_type=expected.value,
                failure=exc.failure.value,
                token_prefix=token_prefix(token),
            )
            if exc.failure == TokenFailure.EXPIRED:
                raise TokenExpiredError() from exc
            raise InvalidTokenError() from exc

    async def _load_principal(self, principal_id: str) -> Principal:
        principal = await self._store(
            self.store.get_principal_by_id, principal_id, operation="get_principal"
        )
        if principal is None:
            raise UserNotFoundError()
        return principal

    def _mint_pair(self, principal_id: str, tenant_id: Optional[str]) -> TokenPair:
        access = self.codec.mint(
            principal_id,
            TokenType.ACCESS,
            timedelta(minutes=self.settings.access_token_ttl_minutes),
            tenant_id=tenant_id,
        )
        refresh = self.codec.mint(
            principal_id,
            TokenType.REFRESH,
            timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            tenant_id=tenant_id,
        )
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
        )

    async def _issue_pair(self, principal: Principal) -> TokenPair:
        tokens = self._mint_pair(principal.id, principal.tenant_id)
        await self._store(
            self.store.store_refresh_token,
            principal.id,
            tokens.refresh_token,
            tokens.refresh_expires_at,
            operation="store_refresh_token",
        )
        return tokens

    async def _rotate_refresh(
        self, refresh_token: str, claims: TokenClaims, tokens: TokenPair
    ) -> str:
        """Swap ``refresh_token`` for the freshly minted one in a single store call.

        A deadline can expire while the worker thread is still running. If the
        swap lands after the caller stopped waiting, nobody holds the new token,
        so the worker swaps the presented token back in.
        """
        handoff = _RotationHandoff()

        def rotate() -> str:
            subject_id = self.store.rotate_refresh_token(
                refresh_token, claims.subject_id, tokens.refresh_token, tokens.refresh_expires_at
            )
            if handoff.deliver(subject_id) or subject_id != claims.subject_id:
                return subject_id
            try:
                self.store.rotate_refresh_token(
                    tokens.refresh_token, subject_id, refresh_token, claims.expires_at
                )
                self.logger.warning("refresh_rotation_rolled_back", principal_id=subject_id)
            except (StorageUnavailable, TokenNotFound, TokenExpired) as exc:
                self.logger.error(
                    "refresh_rotation_rollback_failed",
                    principal_id=subject_id,
                    error_type=type(exc).__name__,
                )
            return subject_id

        try:
            return await self._store(rotate, operation="rotate_refresh_token")
        except UnavailableError:
            delivered = handoff.abandon()
            if delivered is None:
                raise
            # The swap finished just as the deadline fired
            return delivered

    async def _finish_login(
        self, principal: Principal, password: Optional[str] = None
    ) -> LoginResult:
        tokens = await self._issue_pair(principal)
        patch: dict[str, Any] = {"last_login_at": self._clock()}
        if password is not None and self.hasher.needs_rehash(principal.password_hash):
            patch["password_hash"] = await self._hash(password)
            self.logger.info("password_rehashed", principal_id=principal.id)
        updated = await self._store(
            self.store.update_principal, principal.id, operation="update_principal", **patch
        )
        self.logger.info("login_succeeded", principal_id=principal.id)
        return LoginResult(principal=updated or principal, tokens=tokens)

    # ------------------------------------------------------------------
    # registration and login
    # ------------------------------------------------------------------
    async def register(
        self, email: str, password: str, *, tenant_id: Optional[str] = None
    ) -> RegistrationResult:
        normalized = normalize_email(email)
        existing = await self._store(
            self.store.get_principal_by_email, normalized, operation="get_principal_by_email"
        )
        if existing is not None:
            self.logger.info("register_email_in_use", email_hash=email_hash(normalized))
            raise EmailInUseError()
        self.policy.enforce(password)
        password_hash = await self._hash(password)
        try:
            principal = await self._store(
                self.store.create_principal,
                normalized,
                password_hash,
                roles=[self.settings.default_role],
                tenant_id=tenant_id or self.settings.default_tenant_id,
                operation="create_principal",
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same address
            raise EmailInUseError() from exc
        tokens = await self._issue_pair(principal)
        verification_issued = False
        if self.settings.require_email_verification:
            await self._issue_one_time(principal, TokenPurpose.EMAIL_VERIFICATION)
            verification_issued = True
        self.logger.info("principal_registered", principal_id=principal.id)
        return RegistrationResult(
            principal=principal, tokens=tokens, verification_issued=verification_issued
        )

    async def login(self, email: str, password: str) -> LoginResult:
        principal = await self._store(
            self.store.get_principal_by_email, email, operation="get_principal_by_email"
        )
        if principal is None:
            # Same hashing cost as a real account so response timing does not enumerate
            await run_blocking(
                self.hasher.dummy_verify,
                password,
                timeout=self.settings.hash_timeout_seconds,
                operation="verify_password",
            )
            self.logger.info("login_failed", reason="unknown_email", email_hash=email_hash(email))
            raise InvalidCredentialsError()
        password_ok = await self._verify_password(password, principal.password_hash)
        if not principal.is_active:
            self.logger.info("login_failed", reason="inactive", principal_id=principal.id)
            raise AccountInactiveError()
        if not password_ok:
            self.logger.info("login_failed", reason="password_mismatch", principal_id=principal.id)
            raise InvalidCredentialsError()
        if self.settings.require_email_verification and not principal.email_verified:
            self.logger.info("login_failed", reason="not_verified", principal_id=principal.id)
            raise NotVerifiedError()

        credential = await self._store(
            self.store.get_two_factor, principal.id, operation="get_two_factor"
        )
        if credential is not None and credential.is_active:
            pending = self.codec.mint(
                principal.id,
                TokenType.PENDING,
                timedelta(minutes=self.settings.pending_token_ttl_minutes),
                tenant_id=principal.tenant_id,
            )
            self.logger.info("login_mfa_required", principal_id=principal.id)
            return LoginResult(
                principal=principal, mfa_required=True, pending_token=pending.token
            )
        return await self._finish_login(principal, password)

    async def _consume_recovery_code(
        self, principal_id: str, credential: TwoFactorCredential, code: str
    ) -> bool:
        current: Optional[TwoFactorCredential] = credential
        for _ in range(_RECOVERY_SWAP_ATTEMPTS):
            if current is None or not current.is_active:
                return False
            result = totp.consume_recovery_code(current.recovery_codes, code)
            if not result.ok:
                return False
            swapped = await self._store(
                self.store.swap_recovery_codes,
                principal_id,
                current.recovery_codes,
                result.remaining,
                operation="swap_recovery_codes",
            )
            if swapped:
                self.logger.info(
                    "recovery_code_used",
                    principal_id=principal_id,
                    remaining=len(result.remaining),
                )
                return True
            current = await self._store(
                self.store.get_two_factor, principal_id, operation="get_two_factor"
            )
        self.logger.warning("recovery_code_swap_contended", principal_id=principal_id)
        return False

    async def _check_second_factor(
        self, principal_id: str, credential: TwoFactorCredential, code: str
    ) -> bool:
        if totp.verify_code(
            credential.secret, code, self._clock(), window=self.settings.totp_window
        ):
            return True
        return await self._consume_recovery_code(principal_id, credential, code)

    async def complete_two_factor_login(self, pending_token: str, code: str) -> LoginResult:
        claims = self._verify_token(pending_token, TokenType.PENDING)
        if await self._is_blacklisted(pending_token):
            self.logger.warning("pending_token_reused", principal_id=claims.subject_id)
            raise InvalidTokenError()
        principal = await self._load_principal(claims.subject_id)
        if not principal.is_active:
            raise AccountInactiveError()
        credential = await self._store(
            self.store.get_two_factor, principal.id, operation="get_two_factor"
        )
        if credential is None or not credential.is_active:
            # 2FA was disabled between the password step and now
            raise InvalidTokenError()
        if not await self._check_second_factor(principal.id, credential, code):
            self.logger.info("login_failed", reason="second_factor", principal_id=principal.id)
            raise InvalidCredentialsError()
        await self._blacklist(pending_token, claims.expires_at - self._clock())
        return await self._finish_login(principal)

    # ------------------------------------------------------------------
    # token lifecycle
    # ------------------------------------------------------------------
    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            claims = self.codec.verify(refresh_token, TokenType.REFRESH)
        except TokenVerificationError as exc:
            self.logger.info(
                "refresh_rejected", failure=exc.failure.value, token_prefix=token_prefix(refresh_token)
            )
            raise InvalidTokenError() from exc
        tokens = self._mint_pair(claims.subject_id, claims.tenant_id)
        try:
            subject_id = await self._rotate_refresh(refresh_token, claims, tokens)
        except (TokenNotFound, TokenExpired) as exc:
            # Unknown, already rotated, or revoked
            self.logger.warning(
                "refresh_token_not_redeemable",
                principal_id=claims.subject_id,
                reason=type(exc).__name__,
            )
            raise InvalidTokenError() from exc
        if subject_id != claims.subject_id:
            self.logger.error("refresh_subject_mismatch", principal_id=claims.subject_id)
            raise InvalidTokenError()
        principal = await self._store(
            self.store.get_principal_by_id, subject_id, operation="get_principal"
        )
        if principal is None or not principal.is_active:
            await self._store(
                self.store.delete_refresh_token,
                tokens.refresh_token,
                operation="delete_refresh_token",
            )
            if principal is None:
                raise UserNotFoundError()
            raise AccountInactiveError()
        self.logger.info("refresh_rotated", principal_id=principal.id)
        return tokens

    async def logout(self, refresh_token: str, access_token: Optional[str] = None) -> None:
        await self._store(
            self.store.delete_refresh_token, refresh_token, operation="delete_refresh_token"
        )
        if not access_token or not self.settings.token_blacklisting:
            return
        try:
            claims = self.codec.verify(access_token, TokenType.ACCESS)
        except TokenVerificationError:
            # Already useless; nothing to revoke
            return
        await self._blacklist(access_token, claims.expires_at - self._clock())
        self.logger.info("logout_access_blacklisted", principal_id=claims.subject_id)

    async def revoke_all_sessions(self, principal_id: str) -> int:
        revoked = await self._store(
            self.store.delete_all_refresh_tokens_for,
            principal_id,
            operation="delete_all_refresh_tokens",
        )
        self.logger.info("refresh_tokens_revoked", principal_id=principal_id, count=revoked)
        return revoked

    async def authenticate(
        self,
        access_token: str,
        *,
        required_roles: Optional[Sequence[str]] = None,
        require_all: bool = False,
    ) -> AuthContext:
        claims = self._verify_token(access_token, TokenType.ACCESS)
        if self.settings.token_blacklisting and await self._is_blacklisted(access_token):
            self.logger.info("access_token_blacklisted", principal_id=claims.subject_id)
            raise InvalidTokenError()
        principal = await self._load_principal(claims.subject_id)
        if not principal.is_active:
            raise AccountInactiveError()
        if required_roles:
            allowed = (
                has_all_roles(principal, required_roles)
                if require_all
                else has_any_role(principal, required_roles)
            )
            if not allowed:
                self.logger.info(
                    "access_denied", principal_id=principal.id, required=list(required_roles)
                )
                raise AccessDeniedError()
        return AuthContext(
            principal_id=principal.id,
            roles=tuple(principal.roles),
            tenant_id=principal.tenant_id,
            token_id=claims.jti,
            expires_at=claims.expires_at,
            principal=principal,
        )

    # ------------------------------------------------------------------
    # verification and password reset
    # ------------------------------------------------------------------
    async def request_email_verification(self, email: str) -> None:
        principal = await self._store(
            self.store.get_principal_by_email, email, operation="get_principal_by_email"
        )
        if principal is None or principal.email_verified:
            self.logger.info("email_verification_skipped", email_hash=email_hash(email))
            return None
        await self._issue_one_time(principal, TokenPurpose.EMAIL_VERIFICATION)
        return None

    async def verify_email(self, token: str) -> Principal:
        subject_id = await self._redeem_one_time(token, TokenPurpose.EMAIL_VERIFICATION)
        principal = await self._store(
            self.store.update_principal,
            subject_id,
            email_verified=True,
            operation="update_principal",
        )
        if principal is None:
            raise UserNotFoundError()
        self.logger.info("email_verified", principal_id=subject_id)
        return principal

    async def request_password_reset(self, email: str) -> None:
        principal = await self._store(
            self.store.get_principal_by_email, email, operation="get_principal_by_email"
        )
        if principal is None or not principal.is_active:
            self.logger.info("password_reset_skipped", email_hash=email_hash(email))
            return None
        await self._issue_one_time(principal, TokenPurpose.PASSWORD_RESET)
        self.logger.info("password_reset_requested", principal_id=principal.id)
        return None

    async def reset_password(self, token: str, new_password: str) -> None:
        self.policy.enforce(new_password)
        subject_id = await self._redeem_one_time(token, TokenPurpose.PASSWORD_RESET)
        await self._load_principal(subject_id)
        password_hash = await self._hash(new_password)
        updated = await self._store(
            self.store.update_principal,
            subject_id,
            password_hash=password_hash,
            operation="update_principal",
        )
        if updated is None:
            raise UserNotFoundError()
        revoked = await self.revoke_all_sessions(subject_id)
        self.logger.info("password_reset_completed", principal_id=subject_id, revoked=revoked)

    # ------------------------------------------------------------------
    # account maintenance
    # ------------------------------------------------------------------
    async def change_password(
        self, principal_id: str, current_password: str, new_password: str
    ) -> None:
        self.policy.enforce(new_password)
        principal = await self._load_principal(principal_id)
        if not await self._verify_password(current_password, principal.password_hash):
            raise InvalidCredentialsError()
        password_hash = await self._hash(new_password)
        await self._store(
            self.store.update_principal,
            principal_id,
            password_hash=password_hash,
            operation="update_principal",
        )
        await self.revoke_all_sessions(principal_id)
        self.logger.info("password_changed", principal_id=principal_id)

    async def change_email(self, principal_id: str, new_email: str) -> Principal:
        """Move the principal to ``new_email``; the new address always needs verifying."""
        normalized = normalize_email(new_email)
        principal = await self._load_principal(principal_id)
        if principal.email == normalized:
            return principal
        owner = await self._store(
            self.store.get_principal_by_email, normalized, operation="get_principal_by_email"
        )
        if owner is not None:
            raise EmailInUseError()
        try:
            updated = await self._store(
                self.store.update_principal,
                principal_id,
                email=normalized,
                email_verified=False,
                operation="update_principal",
            )
        except ConstraintViolation as exc:
            raise EmailInUseError() from exc
        if updated is None:
            raise UserNotFoundError()
        await self._issue_one_time(updated, TokenPurpose.EMAIL_VERIFICATION)
        self.logger.info("email_changed", principal_id=principal_id)
        return updated

    async def set_principal_active(
        self, caller_id: str, principal_id: str, active: bool
    ) -> Principal:
        await load_admin(self.store, caller_id, timeout=self.settings.storage_timeout_seconds)
        if caller_id == principal_id:
            raise AccessDeniedError("Cannot change your own account status")
        updated = await self._store(
            self.store.update_principal, principal_id, is_active=active, operation="update_principal"
        )
        if updated is None:
            raise UserNotFoundError()
        if not active:
            await self.revoke_all_sessions(principal_id)
        self.logger.info(
            "principal_active_changed", caller_id=caller_id, principal_id=principal_id, active=active
        )
        return updated

    # ------------------------------------------------------------------
    # second factor management
    # ------------------------------------------------------------------
    async def begin_two_factor_enrollment(self, principal_id: str) -> TwoFactorEnrollment:
        principal = await self._load_principal(principal_id)
        secret = totp.generate_secret()
        return TwoFactorEnrollment(
            secret=secret,
            provisioning_uri=totp.provisioning_uri(
                secret, principal.email, self.settings.totp_issuer
            ),
            recovery_codes=totp.generate_recovery_codes(self.settings.recovery_code_count),
        )

    async def confirm_two_factor_enrollment(
        self,
        principal_id: str,
        secret: str,
        recovery_codes: Iterable[str],
        code: str,
    ) -> TwoFactorStatus:
        await self._load_principal(principal_id)
        if not totp.verify_code(secret, code, self._clock(), window=self.settings.totp_window):
            self.logger.info("mfa_enrollment_code_rejected", principal_id=principal_id)
            raise InvalidCredentialsError("Invalid verification code")
        stored = await self._store(
            self.store.set_two_factor,
            principal_id,
            secret,
            totp.hash_recovery_codes(recovery_codes),
            operation="set_two_factor",
        )
        self.logger.info("mfa_enabled", principal_id=principal_id)
        return TwoFactorStatus(enabled=True, recovery_codes_remaining=len(stored.recovery_codes))

    async def disable_two_factor(self, principal_id: str, code: str) -> TwoFactorStatus:
        credential = await self._store(
            self.store.get_two_factor, principal_id, operation="get_two_factor"
        )
        if credential is None or not credential.is_active:
            return TwoFactorStatus(enabled=False)
        if not await self._check_second_factor(principal_id, credential, code):
            raise InvalidCredentialsError("Invalid verification code")
        await self._store(self.store.clear_two_factor, principal_id, operation="clear_two_factor")
        self.logger.info("mfa_disabled", principal_id=principal_id)
        return TwoFactorStatus(enabled=False)

    async def regenerate_recovery_codes(self, principal_id: str, code: str) -> List[str]:
        credential = await self._store(
            self.store.get_two_factor, principal_id, operation="get_two_factor"
        )
        if credential is None or not credential.is_active:
            raise InvalidCredentialsError("Two-factor authentication is not enabled")
        if not totp.verify_code(
            credential.secret, code, self._clock(), window=self.settings.totp_window
        ):
            raise InvalidCredentialsError("Invalid verification code")
        codes = totp.generate_recovery_codes(self.settings.recovery_code_count)
        await self._store(
            self.store.set_two_factor,
            principal_id,
            credential.secret,
            totp.hash_recovery_codes(codes),
            operation="set_two_factor",
        )
        self.logger.info("recovery_codes_regenerated", principal_id=principal_id)
        return codes

    async def two_factor_status(self, principal_id: str) -> TwoFactorStatus:
        credential = await self._store(
            self.store.get_two_factor, principal_id, operation="get_two_factor"
        )
        if credential is None or not credential.is_active:
            return TwoFactorStatus(enabled=False)
        return TwoFactorStatus(
            enabled=True, recovery_codes_remaining=len(credential.recovery_codes)
        )

    # ------------------------------------------------------------------
    # housekeeping
    # ------------------------------------------------------------------
    async def purge_expired(self) -> int:
        now = self._clock()
        removed = await self._store(self.store.purge_expired, now, operation="purge_expired")
        self._last_cleanup = now
        if removed:
            self.logger.info("expired_tokens_purged", count=removed)
        return removed

    async def maybe_cleanup(self, interval_minutes: Optional[int] = None) -> int:
        """Run the expiry sweep if the interval has elapsed since the last one.

        Returns:
            Number of records removed, or 0 if the sweep was skipped
        """
        interval = interval_minutes or self.settings.cleanup_interval_minutes
        if (self._clock() - self._last_cleanup).total_seconds() >= interval * 60:
            return await self.purge_expired()
        return 0

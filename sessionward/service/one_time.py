from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Dict, Optional

from sessionward.config import Settings
from sessionward.logging import get_logger, token_prefix
from sessionward.storage.base import SessionStore
from sessionward.storage.models import IssuedToken

logger = get_logger(__name__)


class TokenPurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"


class OneTimeTokens:
    """Issue and redeem single-use opaque tokens bound to a purpose.

    The token value is random and carries no subject id; storage keys it by
    fingerprint. Redemption goes through the store's atomic consume, so two
    concurrent redemptions of the same token succeed at most once.
    """

    def __init__(self, store: SessionStore, ttls: Dict[TokenPurpose, timedelta]) -> None:
        missing = set(TokenPurpose) - set(ttls)
        if missing:
            raise ValueError(f"missing ttl for purposes: {sorted(p.value for p in missing)}")
        self.store = store
        self.ttls = dict(ttls)

    @classmethod
    def from_settings(cls, store: SessionStore, settings: Settings) -> "OneTimeTokens":
        return cls(
            store,
            {
                TokenPurpose.EMAIL_VERIFICATION: timedelta(
                    minutes=settings.email_verification_ttl_minutes
                ),
                TokenPurpose.PASSWORD_RESET: timedelta(
                    minutes=settings.password_reset_ttl_minutes
                ),
            },
        )

    def issue(
        self, subject_id: str, purpose: TokenPurpose, ttl: Optional[timedelta] = None
    ) -> IssuedToken:
        issued = self.store.issue_one_time_token(
            subject_id, purpose.value, ttl or self.ttls[purpose]
        )
        logger.info(
            "one_time_token_issued",
            purpose=purpose.value,
            subject_id=subject_id,
            expires_at=issued.expires_at.isoformat(),
        )
        return issued

    def redeem(self, token: str, purpose: TokenPurpose) -> str:
        """Consume ``token``; raises ``TokenNotFound`` or ``TokenExpired`` from storage."""
        subject_id = self.store.redeem_one_time_token(token, purpose.value)
        logger.info(
            "one_time_token_redeemed",
            purpose=purpose.value,
            subject_id=subject_id,
            token_prefix=token_prefix(token),
        )
        return subject_id

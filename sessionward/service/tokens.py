"""Compact HS256 bearer tokens for access, refresh and pending-2FA use.

Each token type is signed with its own secret, so a refresh token cannot be
replayed as an access token even before the ``type`` claim is inspected.
Verification is stateless; revocation is layered on by the session service.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sessionward.config import Settings
from sessionward.logging import get_logger
from sessionward.timeutil import Clock, utc_now

logger = get_logger(__name__)


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    PENDING = "pending"


class TokenFailure(str, Enum):
    BAD_SIGNATURE = "BadSignature"
    WRONG_TYPE = "WrongType"
    EXPIRED = "Expired"


class TokenVerificationError(Exception):
    def __init__(self, failure: TokenFailure, message: str = "") -> None:
        super().__init__(message or failure.value)
        self.failure = failure


@dataclass(frozen=True)
class MintedToken:
    token: str
    jti: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    token_type: TokenType
    issued_at: datetime
    expires_at: datetime
    jti: str
    tenant_id: Optional[str] = None


def _derive_secret(base: str, label: str) -> str:
    return hmac.new(base.encode(), label.encode(), hashlib.sha256).hexdigest()


class TokenCodec:
    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: Optional[str] = None,
        pending_secret: Optional[str] = None,
        issuer: str = "sessionward",
        audience: str = "sessionward-clients",
        clock: Optional[Clock] = None,
    ) -> None:
        if not access_secret:
            raise ValueError("access token secret must be non-empty")
        self._secrets: Dict[TokenType, bytes] = {
            TokenType.ACCESS: access_secret.encode(),
            TokenType.REFRESH: (
                refresh_secret or _derive_secret(access_secret, TokenType.REFRESH.value)
            ).encode(),
            TokenType.PENDING: (
                pending_secret or _derive_secret(access_secret, TokenType.PENDING.value)
            ).encode(),
        }
        self.issuer = issuer
        self.audience = audience
        self._clock: Clock = clock or utc_now

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Optional[Clock] = None) -> "TokenCodec":
        return cls(
            access_secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            pending_secret=settings.jwt_pending_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=clock,
        )

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, token_type: TokenType, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self._secrets[token_type], signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def mint(
        self,
        subject_id: str,
        token_type: TokenType,
        ttl: timedelta,
        *,
        tenant_id: Optional[str] = None,
    ) -> MintedToken:
        now = self._clock()
        issued_at = int(now.timestamp())
        expires_at = issued_at + int(ttl.total_seconds())
        jti = uuid.uuid4().hex
        payload: Dict[str, Any] = {
            "sub": subject_id,
            "type": TokenType(token_type).value,
            "iat": issued_at,
            "exp": expires_at,
            "jti": jti,
            "iss": self.issuer,
            "aud": self.audience,
        }
        if tenant_id:
            payload["tenant_id"] = tenant_id
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(TokenType(token_type), signing_input)}"
        return MintedToken(
            token=token,
            jti=jti,
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
        )

    def _split(self, token: str) -> tuple[str, str, str, Dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenVerificationError(TokenFailure.BAD_SIGNATURE, "malformed token")
        try:
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise TokenVerificationError(TokenFailure.BAD_SIGNATURE, "undecodable token")
        if not isinstance(header, dict) or not isinstance(payload, dict):
            raise TokenVerificationError(TokenFailure.BAD_SIGNATURE, "undecodable token")
        # Reject anything but HS256 to prevent algorithm confusion
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=str(header.get("alg")))
            raise TokenVerificationError(TokenFailure.BAD_SIGNATURE, "unsupported algorithm")
        return header_b64, payload_b64, sig_b64, payload

    def verify(self, token: str, expected_type: TokenType) -> TokenClaims:
        """Check signature, then type, then expiry; raise on the first failure."""
        header_b64, payload_b64, sig_b64, payload = self._split(token)
        try:
            claimed_type = TokenType(payload.get("type"))
        except ValueError:
            raise TokenVerificationError(TokenFailure.BAD_SIGNATURE, "unknown token type")
        expected_sig = self._sign(claimed_type, f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenVerificationError(TokenFailure.BAD_SIGNATURE)
        if payload.get("iss") != self.issuer:
            raise TokenVerificationError(TokenFailure.BAD_SIGNATURE, "issuer mismatch")
        aud = payload.get("aud")
        if not (aud == self.audience or (isinstance(aud, list) and self.audience in aud)):
            raise TokenVerificationError(TokenFailure.BAD_SIGNATURE, "audience mismatch")
        if claimed_type != TokenType(expected_type):
            raise TokenVerificationError(TokenFailure.WRONG_TYPE)
        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
            subject_id = str(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise TokenVerificationError(TokenFailure.BAD_SIGNATURE, "missing claims")
        if self._clock().timestamp() >= exp:
            raise TokenVerificationError(TokenFailure.EXPIRED)
        return TokenClaims(
            subject_id=subject_id,
            token_type=claimed_type,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            jti=str(payload.get("jti", "")),
            tenant_id=payload.get("tenant_id"),
        )

    def peek_claims(self, token: str) -> Optional[Dict[str, Any]]:
        """Decode the payload without verifying it. Never use for authorization."""
        try:
            return self._split(token)[3]
        except TokenVerificationError:
            return None

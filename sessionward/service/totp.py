"""RFC 6238 time-based codes and single-use recovery codes.

Codes use HMAC-SHA1 with 30 second steps and 6 digits, which is what standard
authenticator apps expect for an ``otpauth://totp`` enrollment.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Union
from urllib.parse import quote, urlencode

from sessionward.logging import get_logger
from sessionward.storage.common import normalize_code_set

logger = get_logger(__name__)

TIME_STEP_SECONDS = 30
CODE_DIGITS = 6
SECRET_BYTES = 20
DEFAULT_WINDOW = 1
DEFAULT_RECOVERY_CODE_COUNT = 10

# No 0/O or 1/I/L so codes survive being read aloud or copied by hand
RECOVERY_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
RECOVERY_GROUP_LENGTH = 5

Instant = Union[datetime, float, int, None]


def _timestamp(at: Instant) -> float:
    if at is None:
        return time.time()
    if isinstance(at, datetime):
        return at.timestamp()
    return float(at)


def generate_secret() -> str:
    return base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> Optional[bytes]:
    cleaned = secret.replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return None


def code_for_counter(secret: str, counter: int, *, digits: int = CODE_DIGITS) -> str:
    key = _decode_secret(secret)
    if key is None:
        return ""
    digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def current_code(secret: str, at: Instant = None, *, interval: int = TIME_STEP_SECONDS) -> str:
    return code_for_counter(secret, int(_timestamp(at) // interval))


def verify_code(
    secret: str,
    code: str,
    at: Instant = None,
    *,
    window: int = DEFAULT_WINDOW,
    interval: int = TIME_STEP_SECONDS,
) -> bool:
    """Accept codes for the counters ``counter-window .. counter+window``."""
    submitted = (code or "").replace(" ", "")
    if len(submitted) != CODE_DIGITS or not (submitted.isascii() and submitted.isdigit()):
        return False
    counter = int(_timestamp(at) // interval)
    matched = False
    for offset in range(-window, window + 1):
        generated = code_for_counter(secret, counter + offset)
        # Constant-time comparison; keep looping so timing does not reveal the offset
        if generated and hmac.compare_digest(generated, submitted):
            matched = True
    return matched


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account_name}")
    params = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": "SHA1",
            "digits": CODE_DIGITS,
            "period": TIME_STEP_SECONDS,
        }
    )
    return f"otpauth://totp/{label}?{params}"


def generate_recovery_codes(n: int = DEFAULT_RECOVERY_CODE_COUNT) -> List[str]:
    codes: set[str] = set()
    while len(codes) < n:
        raw = "".join(
            secrets.choice(RECOVERY_ALPHABET) for _ in range(RECOVERY_GROUP_LENGTH * 2)
        )
        codes.add(f"{raw[:RECOVERY_GROUP_LENGTH]}-{raw[RECOVERY_GROUP_LENGTH:]}")
    return sorted(codes)


def normalize_recovery_code(code: str) -> str:
    return "".join(ch for ch in (code or "").upper() if ch.isalnum())


def hash_recovery_code(code: str) -> str:
    return hashlib.sha256(normalize_recovery_code(code).encode()).hexdigest()


def hash_recovery_codes(codes: Iterable[str]) -> List[str]:
    return normalize_code_set(hash_recovery_code(code) for code in codes)


@dataclass(frozen=True)
class RecoveryResult:
    ok: bool
    remaining: List[str]


def consume_recovery_code(stored_hashes: Iterable[str], submitted: str) -> RecoveryResult:
    """Remove ``submitted`` from the stored hash set if present."""
    stored = normalize_code_set(stored_hashes)
    if not normalize_recovery_code(submitted):
        return RecoveryResult(ok=False, remaining=stored)
    candidate = hash_recovery_code(submitted)
    hit = None
    for stored_hash in stored:
        if hmac.compare_digest(stored_hash, candidate):
            hit = stored_hash
    if hit is None:
        return RecoveryResult(ok=False, remaining=stored)
    return RecoveryResult(ok=True, remaining=[h for h in stored if h != hit])

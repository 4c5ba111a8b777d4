from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def field(self) -> Optional[str]:
        return self.detail.get("field")


class TokenNotFound(Exception):
    """No stored token matched (never issued, already consumed, or other purpose)."""


class TokenExpired(Exception):
    """A stored token matched but its expiry has passed; the record is consumed."""


class StorageUnavailable(Exception):
    """The backing store could not be reached or timed out."""


__all__ = ["ConstraintViolation", "TokenNotFound", "TokenExpired", "StorageUnavailable"]

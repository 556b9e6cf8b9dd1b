from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreError(Exception):
    """The backing store failed or was unreachable.

    Never a statement about the data itself: callers must not translate it
    into a domain outcome such as "token invalid".
    """

    def __init__(self, message: str, *, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


class StoreTimeoutError(StoreError):
    """A store round trip or pool checkout exceeded its time bound."""


__all__ = ["ConstraintViolation", "StoreError", "StoreTimeoutError"]

from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """Raised when a backing store cannot be reached or did not answer in time.

    ``timed_out`` distinguishes a bounded-timeout expiry from a refused or
    dropped connection so callers can pick fail-closed behavior.
    """

    def __init__(self, store: str, message: str, *, timed_out: bool = False):
        super().__init__(message)
        self.store = store
        self.message = message
        self.timed_out = timed_out


__all__ = ["ConstraintViolation", "StoreUnavailable"]

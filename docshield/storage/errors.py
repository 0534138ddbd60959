from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CounterStoreError(Exception):
    """Raised when the ephemeral counter backend cannot serve a request.

    Callers in the admission layer treat this as transient and let the request
    through rather than blocking traffic on a cache outage.
    """

    def __init__(self, message: str, *, key: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.key = key


__all__ = ["ConstraintViolation", "CounterStoreError"]

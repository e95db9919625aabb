from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for credential store failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a uniqueness constraint (one account per email) is violated."""


class StoreUnavailable(StorageError):
    """The backing store could not be reached or did not answer in time."""


__all__ = ["StorageError", "ConstraintViolation", "StoreUnavailable"]

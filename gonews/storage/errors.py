from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Raised when the local key-value backend cannot be read or written.

    Absence of a value is never an error; callers get ``None`` for that.
    """

    def __init__(
        self,
        message: str,
        *,
        key: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.key = key
        self.detail = detail or {}


class ConstraintViolation(Exception):
    """Raised when a uniqueness constraint in the backend store is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


__all__ = ["StorageError", "ConstraintViolation"]

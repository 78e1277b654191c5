from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for failures raised by a storage backend."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StorageError):
    """Raised when a uniqueness or reference constraint is violated."""


class StorageUnavailable(StorageError):
    """Raised when a storage call cannot complete within its time bound."""


__all__ = ["StorageError", "ConstraintViolation", "StorageUnavailable"]

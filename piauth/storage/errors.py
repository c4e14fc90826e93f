from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Base class for storage-layer failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StorageUnavailable(StorageError):
    """Raised when the backing store cannot be reached or times out."""


class SessionNotFound(StorageError):
    """Raised when no session row exists for a session id."""


class SessionInactive(StorageError):
    """Raised when a session exists but has been deactivated."""


__all__ = ["StorageError", "StorageUnavailable", "SessionNotFound", "SessionInactive"]

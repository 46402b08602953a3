"""Error kinds raised by the point-of-sale backend.

Every error aborts the current request. The request layer flattens them into
``{"status": "error", "error": <message>}`` after the lock is released.
"""

from __future__ import annotations


class BackendError(Exception):
    """Base class for every domain error raised by the backend."""


class LockTimeout(BackendError):
    """Raised when the request lock cannot be acquired within the bound."""


class ValidationError(BackendError, ValueError):
    """Raised for malformed actions, payloads, carts or filters."""


class NotFound(BackendError, KeyError):
    """Raised when a referenced catalog row is absent where it is required."""

    def __str__(self) -> str:
        # KeyError would otherwise wrap the message in quotes.
        return str(self.args[0]) if self.args else ""


class StoreUnavailable(BackendError):
    """Raised when a worksheet the request depends on is missing."""


__all__ = [
    "BackendError",
    "LockTimeout",
    "ValidationError",
    "NotFound",
    "StoreUnavailable",
]

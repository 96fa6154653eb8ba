"""
Error taxonomy for the synchronization engine.

Transport faults are absorbed and retried internally; only structural
errors (unknown organization) and programmer errors reach the caller.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base exception for all statussync errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class TransportError(SyncError):
    """Network failure, timeout or unusable response. Retried with backoff."""


class NotFoundError(SyncError):
    """The organization is unknown to the server. Fatal to the subscription."""

    def __init__(self, org_id: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.org_id = org_id
        super().__init__(f"Organization '{org_id}' not found", details)


class MalformedEventError(SyncError):
    """A push frame or payload could not be decoded. Dropped, never fatal."""


class AlreadyInitializedError(SyncError):
    """``initialize`` was called twice on the same engine."""


class NotInitializedError(SyncError):
    """The engine was asked to merge state before it was seeded."""


class ConfigurationError(SyncError):
    """Invalid configuration file contents."""

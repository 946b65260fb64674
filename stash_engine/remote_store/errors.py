"""Domain exceptions for remote store operations."""

from __future__ import annotations

from stash_engine.errors import StashError


class RemoteStoreError(StashError):
    """Base error for remote store operations."""


class RemoteUnavailableError(RemoteStoreError):
    """Raised when the remote store cannot be reached or provisioned. Fatal before a run starts."""


class RemoteConflictError(RemoteStoreError):
    """Raised when an object already exists at the target path with different content."""

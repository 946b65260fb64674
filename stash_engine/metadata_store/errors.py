"""Domain exceptions for the metadata store."""

from __future__ import annotations

from stash_engine.errors import StashError


class MetadataStoreError(StashError):
    """Base error for metadata store operations."""


class StoreOpenError(MetadataStoreError):
    """Raised when the store database cannot be opened, created, or migrated."""


class UnknownEntryError(MetadataStoreError):
    """Raised when an update targets a content key that is not in the store."""


class EntryInvariantError(MetadataStoreError):
    """Raised when a mutation would change a field that is fixed after creation."""


class EntryDecodeError(MetadataStoreError):
    """Raised when a stored entry value cannot be decoded."""

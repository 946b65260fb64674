"""
Domain exceptions for coldstash.

Notes
-----
Engine code maps every expected failure mode to a domain exception with a clear
meaning. Library exceptions (OSError, sqlite3.Error, botocore errors) are
wrapped at module boundaries with ``raise ... from exc``.

Per-file failures never escape a worker; they are recorded as FAILED outcomes.
Only configuration, lock and traversal failures abort a run.
"""

from __future__ import annotations


class StashError(RuntimeError):
    """Base exception for all coldstash domain failures."""


class ConfigurationError(StashError):
    """Raised when run settings are missing or invalid. Fatal before any work starts."""


class FingerprintError(StashError):
    """Raised when a file cannot be opened or read for fingerprinting."""


class TraversalError(StashError):
    """Raised when the source tree walk is aborted by an unreadable directory."""


class RunLockError(StashError):
    """Raised when a run lock for a namespace cannot be acquired, released, or broken."""


class SnapshotError(StashError):
    """Raised when the metadata store snapshot cannot be written or compressed locally."""

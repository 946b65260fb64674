"""
RemoteStore public API.

The remote store is an external, content-addressed object store. The engine
depends only on this protocol; backends live in sibling modules.

Upload contract
---------------
- If an object already exists at the target path, its size and stored digest
  attribute are compared with the supplied values. An exact match is a no-op
  success returning the existing checksum. A mismatch is a conflict and the
  object is never overwritten.
- Otherwise the file is uploaded and the digest is attached as object metadata
  so future runs can perform the same comparison.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from stash_engine.fingerprint import digest_hex
from stash_engine.remote_store.errors import RemoteConflictError

METADATA_HASH_KEY = "backup-hash"


@dataclass(frozen=True, slots=True)
class ObjectAttrs:
    """
    Attributes of a stored object.

    Attributes
    ----------
    size:
        Object size in bytes.
    digest_hex:
        Sample digest recorded at upload time (uppercase hex), or "" if absent.
    checksum:
        Whole-object checksum reported by the backend.
    """

    size: int
    digest_hex: str
    checksum: str


@dataclass(frozen=True, slots=True)
class UploadResult:
    """Where an upload landed and the checksum the backend reported for it."""

    object_path: str
    checksum: str


class RemoteStore(Protocol):
    """Object storage consumed by the backup engine."""

    def ensure_ready(self) -> None:
        """
        Verify (and provision if needed) the storage container.

        Raises
        ------
        RemoteUnavailableError
            If the store cannot be reached or created.
        """
        raise NotImplementedError

    def exists(self, object_path: str) -> ObjectAttrs | None:
        """Return the attributes of an object, or None if it does not exist."""
        raise NotImplementedError

    def upload(self, local_path: Path, object_path: str, size: int, expected_digest: bytes) -> UploadResult:
        """
        Upload a file unless an identical object is already present.

        Raises
        ------
        RemoteConflictError
            If a different object already exists at ``object_path``.
        RemoteStoreError
            If the upload fails.
        """
        raise NotImplementedError


def resolve_existing(attrs: ObjectAttrs, object_path: str, size: int, expected_digest: bytes) -> UploadResult:
    """
    Apply the conflict rule to an object that already exists.

    Returns
    -------
    UploadResult
        The existing object, when size and digest match.

    Raises
    ------
    RemoteConflictError
        If size or digest differ.
    """
    expected_hex = digest_hex(expected_digest)
    if attrs.size == size and attrs.digest_hex.upper() == expected_hex:
        return UploadResult(object_path=object_path, checksum=attrs.checksum)
    raise RemoteConflictError(
        f"Remote object '{object_path}' already exists, but it's different: "
        f"{size} vs {attrs.size} bytes, {expected_hex} vs {attrs.digest_hex or '<none>'}"
    )

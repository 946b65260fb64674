"""
Sample-based content fingerprinting.

Policy
------
- Files smaller than ``threshold`` bytes are digested in full.
- Larger files are digested over a fixed window taken from the middle of the
  file: ``window`` bytes starting at ``(size - window) // 2``.

This is a probabilistic equality test, not a byte-for-byte identity check. Two
files with equal size and equal middle sample are treated as the same content.
The accepted trade is that huge static files are never read in full.

The digest is SHA-256 (32 bytes). Together with the exact file size it forms the
ContentKey, the primary key of the metadata store.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from stash_engine.errors import FingerprintError

DEFAULT_SAMPLE_BYTES: Final[int] = 128_000
DIGEST_SIZE: Final[int] = 32
KEY_SIZE: Final[int] = 8 + DIGEST_SIZE

_SIZE_FORMAT: Final[str] = "<Q"
_READ_CHUNK: Final[int] = 1024 * 1024


@dataclass(frozen=True, slots=True)
class SamplePolicy:
    """
    How much of a file is read to compute its digest.

    Attributes
    ----------
    threshold:
        Files strictly smaller than this are hashed in full.
    window:
        Number of bytes hashed from the middle of files at or above the threshold.
    """

    threshold: int = DEFAULT_SAMPLE_BYTES
    window: int = DEFAULT_SAMPLE_BYTES

    def __post_init__(self) -> None:
        if self.threshold <= 0:
            raise ValueError("threshold must be positive.")
        if self.window <= 0:
            raise ValueError("window must be positive.")
        if self.window > self.threshold:
            raise ValueError("window must not exceed threshold.")

    @classmethod
    def uniform(cls, sample_bytes: int) -> SamplePolicy:
        """Return a policy whose threshold and window are both ``sample_bytes``."""
        return cls(threshold=sample_bytes, window=sample_bytes)

    def sample_range(self, size: int) -> tuple[int, int]:
        """
        Return the ``(offset, length)`` of the bytes that are digested.

        Parameters
        ----------
        size:
            File size in bytes.
        """
        if size < self.threshold:
            return 0, size
        return (size - self.window) // 2, self.window


@dataclass(frozen=True, slots=True, order=True)
class ContentKey:
    """
    Identity of a unit of deduplicated content.

    Attributes
    ----------
    size:
        Exact file size in bytes.
    digest:
        SHA-256 of the sampled bytes.
    """

    size: int
    digest: bytes

    def __post_init__(self) -> None:
        if self.size < 0:
            raise ValueError("size must be non-negative.")
        if len(self.digest) != DIGEST_SIZE:
            raise ValueError(f"digest must be {DIGEST_SIZE} bytes, got {len(self.digest)}.")

    def to_bytes(self) -> bytes:
        """Encode as 8-byte little-endian size followed by the 32-byte digest."""
        return struct.pack(_SIZE_FORMAT, self.size) + self.digest

    @classmethod
    def from_bytes(cls, raw: bytes) -> ContentKey:
        """Decode a 40-byte store key."""
        if len(raw) != KEY_SIZE:
            raise ValueError(f"content key must be {KEY_SIZE} bytes, got {len(raw)}.")
        (size,) = struct.unpack(_SIZE_FORMAT, raw[:8])
        return cls(size=size, digest=bytes(raw[8:]))

    def hex(self) -> str:
        """Uppercase hex of the encoded key, for logs and error messages."""
        return self.to_bytes().hex().upper()


def digest_hex(digest: bytes) -> str:
    """Render a digest the way it is stored in remote object metadata."""
    return digest.hex().upper()


def fingerprint_file(path: Path, size: int, policy: SamplePolicy | None = None) -> bytes:
    """
    Compute the sample digest of a file.

    Parameters
    ----------
    path:
        File to read.
    size:
        File size as observed by the traversal. The sample position is derived
        from it, so it must be the size the caller will store in the key.
    policy:
        Sampling policy. Defaults to a 128,000 byte threshold and window.

    Returns
    -------
    bytes
        32-byte SHA-256 digest.

    Raises
    ------
    FingerprintError
        If the file cannot be opened, seeked, or read, or if it is shorter than
        the sample the size promised.
    """
    active = policy or SamplePolicy()
    offset, length = active.sample_range(size)

    hasher = hashlib.sha256()
    remaining = length
    try:
        with path.open("rb") as handle:
            if offset:
                handle.seek(offset)
            while remaining > 0:
                chunk = handle.read(min(_READ_CHUNK, remaining))
                if not chunk:
                    break
                hasher.update(chunk)
                remaining -= len(chunk)
    except OSError as exc:
        raise FingerprintError(f"Cannot read file for fingerprint: {path} ({exc!s})") from exc

    if remaining:
        raise FingerprintError(
            f"File shrank while fingerprinting: {path} (expected {length} bytes at offset {offset}, "
            f"missing {remaining})"
        )
    return hasher.digest()


def content_key_for(path: Path, size: int, policy: SamplePolicy | None = None) -> ContentKey:
    """Fingerprint ``path`` and return its ContentKey."""
    return ContentKey(size=size, digest=fingerprint_file(path, size, policy))

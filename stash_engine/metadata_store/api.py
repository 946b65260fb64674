"""
MetadataStore public API.

The metadata store is the only durable state coldstash owns. It maps a
ContentKey (size + sample digest) to one Entry per backup namespace.

Notes
-----
- Entries are created once and never deleted.
- ``entry_id``, ``size`` and ``digest`` never change after creation.
- ``cloud`` and ``checksum`` are written once, when the upload completes.
- ``path`` follows the file when a rename is detected.
- ``upload_claim`` names the run that currently owns the upload of an
  incomplete entry. Runs of one namespace are mutually exclusive (see
  ``stash_engine.run_lock``), so a claim from any other run id is stale.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterator, Protocol

from stash_engine.fingerprint import ContentKey

EntryId = int


@dataclass(frozen=True, slots=True)
class Entry:
    """
    One stored content key.

    Attributes
    ----------
    entry_id:
        Monotonically increasing identifier, unique per namespace.
    path:
        Logical posix path relative to the backup root.
    cloud:
        Remote object path, or "" until uploaded.
    size:
        File size in bytes.
    digest:
        32-byte sample digest.
    checksum:
        Whole-object checksum reported by the remote store, or "" until uploaded.
    upload_claim:
        Run id owning an in-flight upload, or "".
    """

    entry_id: EntryId
    path: str
    cloud: str
    size: int
    digest: bytes
    checksum: str
    upload_claim: str = ""

    @property
    def key(self) -> ContentKey:
        return ContentKey(size=self.size, digest=self.digest)

    @property
    def is_complete(self) -> bool:
        """True once both the remote path and the remote checksum are recorded."""
        return bool(self.cloud) and bool(self.checksum)


class AddStatus(str, Enum):
    """
    Outcome of ``add_if_absent``.

    These values are written to the run journal. Treat them as a stable
    external contract.
    """

    NEW = "new"
    RESUMED = "resumed"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


@dataclass(frozen=True, slots=True)
class AddResult:
    """
    Result of an atomic check-and-create.

    Attributes
    ----------
    status:
        What the store found for the key.
    entry_id:
        Identifier of the (new or existing) entry.
    stored_path:
        Path recorded in the entry before this call.
    """

    status: AddStatus
    entry_id: EntryId
    stored_path: str

    @property
    def needs_upload(self) -> bool:
        """True when the caller now holds the upload claim for the key."""
        return self.status in (AddStatus.NEW, AddStatus.RESUMED)


@dataclass(frozen=True, slots=True)
class CorruptEntry:
    """A stored value that could not be decoded during iteration."""

    key_hex: str
    message: str


EntryMutator = Callable[[Entry], Entry]


class MetadataStore(Protocol):
    """
    Persistence API for content entries in one namespace.

    Implementations serialize all writes. Reads may run concurrently with each
    other and observe a transactionally consistent snapshot.
    """

    def add_if_absent(self, path: str, size: int, digest: bytes, claim: str) -> AddResult:
        """
        Atomically look up a content key, creating or claiming it as needed.

        Parameters
        ----------
        path:
            Logical path of the file being processed.
        size:
            File size in bytes.
        digest:
            Sample digest of the file.
        claim:
            Upload claim token (the run id).

        Returns
        -------
        AddResult
            NEW if created, RESUMED if an incomplete entry was claimed,
            IN_PROGRESS if ``claim`` already owns it, COMPLETE otherwise.
        """
        raise NotImplementedError

    def update_by_key(self, size: int, digest: bytes, mutator: EntryMutator) -> Entry:
        """
        Atomically apply ``mutator`` to the entry for a key and persist it.

        Raises
        ------
        UnknownEntryError
            If the key is not stored.
        EntryInvariantError
            If the mutator changes a fixed field.
        """
        raise NotImplementedError

    def release_claim(self, size: int, digest: bytes, claim: str) -> bool:
        """Clear the upload claim if ``claim`` holds it. Returns True when cleared."""
        raise NotImplementedError

    def get(self, size: int, digest: bytes) -> Entry | None:
        """Return the entry for a key, or None."""
        raise NotImplementedError

    def for_each_entry(
        self,
        visit: Callable[[Entry], None],
        *,
        on_corrupt: Callable[[CorruptEntry], None] | None = None,
    ) -> int:
        """Visit every entry in key order inside one read snapshot. Returns the count visited."""
        raise NotImplementedError

    def iter_entries(self) -> Iterator[Entry]:
        """Yield every decodable entry in key order."""
        raise NotImplementedError

    def count(self) -> int:
        """Return the number of entries in the namespace."""
        raise NotImplementedError

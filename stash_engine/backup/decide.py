"""
Per-file deduplication decisions.

Each worker calls ``DedupDecisionEngine.process`` once per discovered file. The
sequence for one file is strictly ordered:

1. fingerprint the file into a ContentKey,
2. ``add_if_absent`` in the metadata store (claiming the upload if needed),
3. atomically mark the entry id in the TouchedSet,
4. branch:

   - the caller holds the upload claim (new or resumable entry): upload, then
     record cloud path and checksum. The claim holder always uploads, even
     when a racing duplicate marked the id first;
   - already touched this run, or claimed by another worker of this run:
     DUPLICATE, no store mutation;
   - complete entry stored under another path: RENAMED, path updated;
   - complete entry at the same path: UNCHANGED.

Failures of any step are captured as a FAILED outcome. ``process`` never
raises for a per-file problem, so one bad file cannot stop a worker.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any

from stash_engine.backup.scan import WorkItem
from stash_engine.backup.touched import TouchedSet
from stash_engine.errors import StashError
from stash_engine.fingerprint import ContentKey, SamplePolicy, content_key_for
from stash_engine.metadata_store.api import AddResult, AddStatus, Entry, EntryId, MetadataStore
from stash_engine.metadata_store.errors import MetadataStoreError
from stash_engine.paths_and_safety import logical_path, remote_object_path
from stash_engine.remote_store.api import RemoteStore


class FileOutcomeKind(str, Enum):
    """
    Classification of a processed file.

    These values are written to the run journal. Treat them as a stable
    external contract.
    """

    UPLOADED = "uploaded"
    RESUMED_UPLOAD = "resumed_upload"
    RENAMED = "renamed"
    UNCHANGED = "unchanged"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class FileOutcome:
    """
    Result of processing one file.

    Attributes
    ----------
    kind:
        Classification.
    path:
        Logical path of the file (absolute path if it could not be derived).
    entry_id:
        Entry the file maps to, when known.
    key_hex:
        Hex of the content key, when known.
    related_path:
        For RENAMED, the previous path. For DUPLICATE, the path of the copy
        that owns the entry.
    cloud:
        Remote object path, for uploads.
    message:
        Failure detail for FAILED outcomes.
    """

    kind: FileOutcomeKind
    path: str
    entry_id: EntryId | None = None
    key_hex: str = ""
    related_path: str = ""
    cloud: str = ""
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable payload."""
        return {
            "kind": self.kind.value,
            "path": self.path,
            "entry_id": self.entry_id,
            "key": self.key_hex,
            "related_path": self.related_path,
            "cloud": self.cloud,
            "message": self.message,
        }


@dataclass(frozen=True, slots=True)
class DedupDecisionEngine:
    """
    Decision logic shared by all workers of one run.

    Attributes
    ----------
    store:
        Metadata store for the run's namespace.
    remote:
        Remote store receiving uploads.
    touched:
        Ids observed in this run.
    source_root:
        Resolved backup root; logical paths are relative to it.
    namespace:
        Backup name, used as the remote object prefix.
    run_id:
        Current run id, used as the upload claim token.
    sample_policy:
        Fingerprint sampling policy.
    """

    store: MetadataStore
    remote: RemoteStore
    touched: TouchedSet
    source_root: Path
    namespace: str
    run_id: str
    sample_policy: SamplePolicy = SamplePolicy()

    def process(self, item: WorkItem) -> FileOutcome:
        """Classify and act on one file. Never raises for per-file failures."""
        path = str(item.absolute_path)
        key: ContentKey | None = None
        try:
            path = logical_path(self.source_root, item.absolute_path)
            key = content_key_for(item.absolute_path, item.size_bytes, self.sample_policy)
            added = self.store.add_if_absent(path, key.size, key.digest, self.run_id)
            was_touched = self.touched.mark(added.entry_id)

            if added.needs_upload:
                return self._upload(item, path, key, added)
            if was_touched or added.status is AddStatus.IN_PROGRESS:
                return FileOutcome(
                    kind=FileOutcomeKind.DUPLICATE,
                    path=path,
                    entry_id=added.entry_id,
                    key_hex=key.hex(),
                    related_path=added.stored_path,
                )
            if added.stored_path != path:
                return self._rename(path, key, added)
            return FileOutcome(
                kind=FileOutcomeKind.UNCHANGED, path=path, entry_id=added.entry_id, key_hex=key.hex()
            )
        except (StashError, OSError) as exc:
            return FileOutcome(
                kind=FileOutcomeKind.FAILED,
                path=path,
                key_hex=key.hex() if key is not None else "",
                message=str(exc),
            )

    def _upload(self, item: WorkItem, path: str, key: ContentKey, added: AddResult) -> FileOutcome:
        object_path = remote_object_path(self.namespace, path)
        try:
            result = self.remote.upload(item.absolute_path, object_path, key.size, key.digest)
        except (StashError, OSError) as exc:
            message = f"Cannot upload to remote store: {exc!s}"
            try:
                self.store.release_claim(key.size, key.digest, self.run_id)
            except MetadataStoreError as release_exc:
                message += f" (upload claim not released: {release_exc!s})"
            return FileOutcome(
                kind=FileOutcomeKind.FAILED,
                path=path,
                entry_id=added.entry_id,
                key_hex=key.hex(),
                message=message,
            )

        def _complete(entry: Entry) -> Entry:
            return replace(entry, path=path, cloud=result.object_path, checksum=result.checksum, upload_claim="")

        self.store.update_by_key(key.size, key.digest, _complete)
        kind = FileOutcomeKind.RESUMED_UPLOAD if added.status is AddStatus.RESUMED else FileOutcomeKind.UPLOADED
        return FileOutcome(
            kind=kind,
            path=path,
            entry_id=added.entry_id,
            key_hex=key.hex(),
            cloud=result.object_path,
        )

    def _rename(self, path: str, key: ContentKey, added: AddResult) -> FileOutcome:
        # The remote object keeps its original path; only the local path moves.
        self.store.update_by_key(key.size, key.digest, lambda entry: replace(entry, path=path))
        return FileOutcome(
            kind=FileOutcomeKind.RENAMED,
            path=path,
            entry_id=added.entry_id,
            key_hex=key.hex(),
            related_path=added.stored_path,
        )

"""
Off-site copy of the metadata store.

The metadata store is the only state that maps remote objects back to local
content. After a run, a consistent copy is taken with the SQLite backup API,
compressed with zstd, and uploaded through the normal RemoteStore contract at
``.coldstash/<namespace>/snapshots/<run_id>.sqlite.zst``.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

import zstandard as zstd

from stash_engine.compression import compress_file
from stash_engine.errors import SnapshotError
from stash_engine.metadata_store.sqlite_store import SqliteMetadataStore
from stash_engine.paths_and_safety import validate_namespace
from stash_engine.remote_store.api import RemoteStore, UploadResult

SNAPSHOT_PREFIX = ".coldstash"


def snapshot_object_path(namespace: str, run_id: str) -> str:
    """Remote object path of the store snapshot taken by ``run_id``."""
    return f"{SNAPSHOT_PREFIX}/{validate_namespace(namespace)}/snapshots/{run_id}.sqlite.zst"


def upload_store_snapshot(
    *,
    store: SqliteMetadataStore,
    remote: RemoteStore,
    run_id: str,
    work_root: Path,
) -> UploadResult:
    """
    Snapshot, compress and upload the metadata store.

    Temporary files are created under ``work_root`` and removed afterwards.

    Raises
    ------
    MetadataStoreError
        If the snapshot cannot be taken.
    SnapshotError
        If the snapshot cannot be staged or compressed locally.
    RemoteStoreError
        If the upload fails or conflicts.
    """
    raw_copy = work_root / f"{run_id}.sqlite"
    compressed = work_root / f"{run_id}.sqlite.zst"
    try:
        work_root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise SnapshotError(f"Cannot create snapshot work directory '{work_root}': {exc!s}") from exc

    try:
        store.snapshot_to(raw_copy)
        try:
            compress_file(source=raw_copy, output_path=compressed, overwrite=True)
            size = compressed.stat().st_size
            digest = _sha256_file(compressed)
        except (OSError, ValueError, zstd.ZstdError) as exc:
            raise SnapshotError(f"Cannot compress store snapshot '{raw_copy}': {exc!s}") from exc
        return remote.upload(compressed, snapshot_object_path(store.namespace, run_id), size, digest)
    finally:
        raw_copy.unlink(missing_ok=True)
        compressed.unlink(missing_ok=True)


def _sha256_file(path: Path) -> bytes:
    hasher = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            hasher.update(chunk)
    return hasher.digest()

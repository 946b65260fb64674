"""
Run configuration.

BackupSettings is built by the CLI (or by a caller embedding the engine) and
validated before any work begins. Every problem found here is a fatal
configuration error: the run aborts before the store is opened or a single
file is read.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Final

from stash_engine.backup.scan import (
    DEFAULT_SKIP_DIRECTORY_NAMES,
    DEFAULT_SKIP_FILE_SUFFIXES,
    ScanRules,
)
from stash_engine.errors import ConfigurationError
from stash_engine.fingerprint import DEFAULT_SAMPLE_BYTES, SamplePolicy
from stash_engine.paths_and_safety import SafetyViolationError, validate_namespace, validate_source_path

DEFAULT_WORKERS: Final[int] = 20


class RemoteBackend(str, Enum):
    """Supported remote store backends."""

    S3 = "s3"
    LOCAL = "local"


@dataclass(frozen=True, slots=True)
class BackupSettings:
    """
    Settings for one backup run.

    Attributes
    ----------
    db_path:
        Metadata store database.
    namespace:
        Backup name: metadata namespace and remote object prefix.
    source:
        Directory to back up.
    workers:
        Number of worker threads.
    backend:
        Remote store backend.
    bucket:
        S3 bucket (s3 backend).
    project:
        Named AWS profile (s3 backend).
    region:
        S3 region (s3 backend).
    endpoint_url:
        Custom S3 endpoint (s3 backend).
    storage_class:
        S3 storage class for uploads (s3 backend).
    remote_root:
        Destination directory (local backend).
    skip_directory_names:
        Directory names pruned from the walk.
    skip_file_suffixes:
        File name suffixes ignored by the walk.
    sample_bytes:
        Fingerprint threshold and window.
    snapshot_store:
        Upload a compressed copy of the store after the run.
    force:
        Break a provably stale run lock.
    break_lock:
        Break any existing run lock.
    """

    db_path: Path
    namespace: str
    source: Path
    workers: int = DEFAULT_WORKERS
    backend: RemoteBackend = RemoteBackend.S3
    bucket: str | None = None
    project: str | None = None
    region: str | None = None
    endpoint_url: str | None = None
    storage_class: str | None = None
    remote_root: Path | None = None
    skip_directory_names: tuple[str, ...] = tuple(sorted(DEFAULT_SKIP_DIRECTORY_NAMES))
    skip_file_suffixes: tuple[str, ...] = DEFAULT_SKIP_FILE_SUFFIXES
    sample_bytes: int = DEFAULT_SAMPLE_BYTES
    snapshot_store: bool = False
    force: bool = False
    break_lock: bool = False

    def validate(self) -> BackupSettings:
        """
        Check every setting and return a normalized copy.

        The returned copy has a resolved ``source``, a stripped ``namespace``
        and an expanded ``db_path``.

        Raises
        ------
        ConfigurationError
            On the first invalid or missing setting.
        """
        if not str(self.db_path).strip():
            raise ConfigurationError("Specify where to keep the database with --db=/path/to/db")
        try:
            namespace = validate_namespace(self.namespace)
            source = validate_source_path(self.source)
        except SafetyViolationError as exc:
            raise ConfigurationError(str(exc)) from exc

        # The database, its WAL and the ``<db>.state`` directory change every run.
        db_resolved = Path(self.db_path).expanduser().resolve()
        if source in db_resolved.parents:
            raise ConfigurationError(f"Database must not be inside the source tree: {db_resolved}")

        if self.workers < 1:
            raise ConfigurationError("At least 1 worker thread is needed to back up your data.")
        if self.sample_bytes < 1:
            raise ConfigurationError("Sample size must be a positive number of bytes.")

        if self.backend is RemoteBackend.S3:
            if not (self.bucket or "").strip():
                raise ConfigurationError("Specify the name of the bucket with --bucket=myBucket")
        elif self.backend is RemoteBackend.LOCAL:
            if self.remote_root is None or not str(self.remote_root).strip():
                raise ConfigurationError("Specify the destination directory with --remote-root=/path/to/dir")
            remote_root = Path(self.remote_root).expanduser().resolve()
            if remote_root == source or source in remote_root.parents:
                raise ConfigurationError(f"Destination directory must not be inside the source tree: {remote_root}")
        else:
            raise ConfigurationError(f"Unsupported remote backend: {self.backend!r}")

        return replace(
            self,
            db_path=Path(self.db_path).expanduser(),
            namespace=namespace,
            source=source,
        )

    @property
    def sample_policy(self) -> SamplePolicy:
        return SamplePolicy.uniform(self.sample_bytes)

    @property
    def scan_rules(self) -> ScanRules:
        return ScanRules(
            skip_directory_names=frozenset(self.skip_directory_names),
            skip_file_suffixes=tuple(self.skip_file_suffixes),
        )

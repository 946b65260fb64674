"""Factory for RemoteStore backends."""

from __future__ import annotations

from pathlib import Path

from stash_engine.errors import ConfigurationError
from stash_engine.remote_store.api import RemoteStore
from stash_engine.remote_store.local_store import LocalDirectoryRemoteStore
from stash_engine.remote_store.s3_store import create_s3_remote_store
from stash_engine.settings import BackupSettings, RemoteBackend


def create_remote_store(settings: BackupSettings) -> RemoteStore:
    """
    Create the RemoteStore selected by ``settings.backend``.

    The store is not contacted here; call ``ensure_ready`` before use.

    Raises
    ------
    ConfigurationError
        If the backend is unknown or its required settings are missing.
    RemoteUnavailableError
        If the backend client cannot be created.
    """
    if settings.backend is RemoteBackend.S3:
        if not settings.bucket:
            raise ConfigurationError("The s3 backend requires a bucket.")
        return create_s3_remote_store(
            bucket=settings.bucket,
            project=settings.project,
            region=settings.region,
            endpoint_url=settings.endpoint_url,
            storage_class=settings.storage_class,
        )
    if settings.backend is RemoteBackend.LOCAL:
        if settings.remote_root is None:
            raise ConfigurationError("The local backend requires a destination directory.")
        return LocalDirectoryRemoteStore(Path(settings.remote_root))
    raise ConfigurationError(f"Unsupported remote backend: {settings.backend!r}")

"""
S3-compatible remote store (AWS S3, MinIO, and other S3 APIs).

Objects are written under ``<bucket>/<namespace>/<logical path>``. The sample
digest is attached as user metadata at upload time, and the ETag is used as
the whole-object checksum.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Final

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from stash_engine.fingerprint import digest_hex
from stash_engine.paths_and_safety import printable
from stash_engine.remote_store.api import (
    METADATA_HASH_KEY,
    ObjectAttrs,
    RemoteStore,
    UploadResult,
    resolve_existing,
)
from stash_engine.remote_store.errors import RemoteStoreError, RemoteUnavailableError

_NOT_FOUND_CODES: Final[frozenset[str]] = frozenset({"404", "NoSuchKey", "NotFound", "NoSuchBucket"})


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _require_utf8_key(object_path: str) -> str:
    # S3 keys are UTF-8; file names with undecodable bytes cannot be stored as-is.
    try:
        object_path.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise RemoteStoreError(f"Object path is not valid UTF-8: {printable(object_path)!r}") from exc
    return object_path


class S3RemoteStore(RemoteStore):
    """RemoteStore backed by an S3 bucket."""

    def __init__(
        self,
        client: Any,
        bucket: str,
        *,
        region: str | None = None,
        storage_class: str | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            client: A boto3 S3 client.
            bucket: Bucket name. Created by ``ensure_ready`` when missing.
            region: Region used when the bucket has to be created.
            storage_class: Optional S3 storage class for uploaded objects.
        """
        self._s3 = client
        self._bucket = bucket
        self._region = region
        self._storage_class = storage_class

    @property
    def bucket(self) -> str:
        return self._bucket

    def ensure_ready(self) -> None:
        """See RemoteStore.ensure_ready."""
        try:
            self._s3.head_bucket(Bucket=self._bucket)
            return
        except ClientError as exc:
            if _error_code(exc) not in _NOT_FOUND_CODES:
                raise RemoteUnavailableError(f"Cannot open bucket '{self._bucket}': {exc!s}") from exc
        except BotoCoreError as exc:
            raise RemoteUnavailableError(f"Cannot reach object storage: {exc!s}") from exc

        kwargs: dict[str, Any] = {"Bucket": self._bucket}
        if self._region and self._region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self._region}
        try:
            self._s3.create_bucket(**kwargs)
        except (ClientError, BotoCoreError) as exc:
            raise RemoteUnavailableError(f"Cannot create bucket '{self._bucket}': {exc!s}") from exc

    def exists(self, object_path: str) -> ObjectAttrs | None:
        """See RemoteStore.exists."""
        _require_utf8_key(object_path)
        try:
            head = self._s3.head_object(Bucket=self._bucket, Key=object_path)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return None
            raise RemoteStoreError(f"Cannot check remote object '{object_path}': {exc!s}") from exc
        except BotoCoreError as exc:
            raise RemoteStoreError(f"Cannot check remote object '{object_path}': {exc!s}") from exc

        metadata = {str(k).lower(): str(v) for k, v in (head.get("Metadata") or {}).items()}
        return ObjectAttrs(
            size=int(head.get("ContentLength", 0)),
            digest_hex=metadata.get(METADATA_HASH_KEY, ""),
            checksum=str(head.get("ETag", "")).strip('"'),
        )

    def upload(self, local_path: Path, object_path: str, size: int, expected_digest: bytes) -> UploadResult:
        """See RemoteStore.upload."""
        existing = self.exists(object_path)
        if existing is not None:
            return resolve_existing(existing, object_path, size, expected_digest)

        extra: dict[str, Any] = {"Metadata": {METADATA_HASH_KEY: digest_hex(expected_digest)}}
        if self._storage_class:
            extra["StorageClass"] = self._storage_class
        try:
            self._s3.upload_file(str(local_path), self._bucket, object_path, ExtraArgs=extra)
        except (ClientError, BotoCoreError, OSError) as exc:
            raise RemoteStoreError(f"Cannot upload '{local_path}' to '{object_path}': {exc!s}") from exc

        uploaded = self.exists(object_path)
        if uploaded is None:
            raise RemoteStoreError(f"Uploaded object '{object_path}' is not visible after upload.")
        if uploaded.size != size:
            raise RemoteStoreError(
                f"Uploaded object '{object_path}' has {uploaded.size} bytes, expected {size} "
                "(file changed during upload?)"
            )
        return UploadResult(object_path=object_path, checksum=uploaded.checksum)


def create_s3_remote_store(
    *,
    bucket: str,
    project: str | None = None,
    region: str | None = None,
    endpoint_url: str | None = None,
    storage_class: str | None = None,
) -> S3RemoteStore:
    """
    Build an S3RemoteStore from connection settings.

    Parameters
    ----------
    bucket:
        Bucket name.
    project:
        Named AWS profile (account/credentials) to use. Defaults to the boto3
        credential chain.
    region:
        Region name.
    endpoint_url:
        Custom endpoint for MinIO or other S3-compatible storage.
    storage_class:
        Storage class for uploaded objects.

    Raises
    ------
    RemoteUnavailableError
        If the boto3 session or client cannot be created.
    """
    try:
        session = boto3.session.Session(profile_name=project or None, region_name=region or None)
        client = session.client("s3", endpoint_url=endpoint_url or None)
    except BotoCoreError as exc:
        raise RemoteUnavailableError(f"Cannot create the object storage client: {exc!s}") from exc
    return S3RemoteStore(client, bucket, region=region, storage_class=storage_class)

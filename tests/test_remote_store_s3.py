"""Tests for the S3 remote store against a mocked boto3 client."""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from stash_engine.fingerprint import digest_hex
from stash_engine.remote_store.api import METADATA_HASH_KEY
from stash_engine.remote_store.errors import (
    RemoteConflictError,
    RemoteStoreError,
    RemoteUnavailableError,
)
from stash_engine.remote_store.s3_store import S3RemoteStore, create_s3_remote_store

DIGEST = bytes.fromhex("AB" * 32)


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.fixture
def mock_s3() -> MagicMock:
    """A boto3 S3 client whose objects live in a dict."""
    objects: dict[str, dict[str, Any]] = {}
    client = MagicMock()

    def head_object(Bucket: str, Key: str) -> dict[str, Any]:
        if Key not in objects:
            raise _client_error("404", "HeadObject")
        return objects[Key]

    def upload_file(Filename: str, Bucket: str, Key: str, ExtraArgs: dict[str, Any] | None = None) -> None:
        data = Path(Filename).read_bytes()
        extra = ExtraArgs or {}
        objects[Key] = {
            "ContentLength": len(data),
            "ETag": '"etag-%d"' % len(data),
            # S3 returns user metadata keys lowercased.
            "Metadata": {k.lower(): v for k, v in extra.get("Metadata", {}).items()},
            "StorageClass": extra.get("StorageClass"),
        }

    client.head_object.side_effect = head_object
    client.upload_file.side_effect = upload_file
    client.objects = objects
    return client


def _file(tmp_path: Path, data: bytes = b"content") -> Path:
    path = tmp_path / "a.bin"
    path.write_bytes(data)
    return path


def test_upload_attaches_digest_metadata_and_returns_etag(tmp_path: Path, mock_s3: MagicMock) -> None:
    store = S3RemoteStore(mock_s3, "bucket", storage_class="DEEP_ARCHIVE")

    result = store.upload(_file(tmp_path), "photos/a.bin", 7, DIGEST)

    assert result.object_path == "photos/a.bin"
    assert result.checksum == "etag-7"
    stored = mock_s3.objects["photos/a.bin"]
    assert stored["Metadata"][METADATA_HASH_KEY] == digest_hex(DIGEST)
    assert stored["StorageClass"] == "DEEP_ARCHIVE"


def test_identical_existing_object_is_not_reuploaded(tmp_path: Path, mock_s3: MagicMock) -> None:
    store = S3RemoteStore(mock_s3, "bucket")
    store.upload(_file(tmp_path), "photos/a.bin", 7, DIGEST)

    again = store.upload(_file(tmp_path), "photos/a.bin", 7, DIGEST)

    assert again.checksum == "etag-7"
    assert mock_s3.upload_file.call_count == 1


def test_different_existing_object_conflicts(tmp_path: Path, mock_s3: MagicMock) -> None:
    store = S3RemoteStore(mock_s3, "bucket")
    store.upload(_file(tmp_path), "photos/a.bin", 7, DIGEST)

    with pytest.raises(RemoteConflictError):
        store.upload(_file(tmp_path, b"other!!"), "photos/a.bin", 7, bytes(32))

    assert mock_s3.upload_file.call_count == 1


def test_upload_error_is_wrapped(tmp_path: Path, mock_s3: MagicMock) -> None:
    mock_s3.upload_file.side_effect = _client_error("AccessDenied", "PutObject")
    store = S3RemoteStore(mock_s3, "bucket")

    with pytest.raises(RemoteStoreError, match="Cannot upload"):
        store.upload(_file(tmp_path), "photos/a.bin", 7, DIGEST)


def test_size_mismatch_after_upload_fails(tmp_path: Path, mock_s3: MagicMock) -> None:
    store = S3RemoteStore(mock_s3, "bucket")

    with pytest.raises(RemoteStoreError, match="expected 8"):
        store.upload(_file(tmp_path), "photos/a.bin", 8, DIGEST)


def test_ensure_ready_creates_missing_bucket_in_region(mock_s3: MagicMock) -> None:
    mock_s3.head_bucket.side_effect = _client_error("404", "HeadBucket")
    store = S3RemoteStore(mock_s3, "bucket", region="eu-west-1")

    store.ensure_ready()

    mock_s3.create_bucket.assert_called_once_with(
        Bucket="bucket", CreateBucketConfiguration={"LocationConstraint": "eu-west-1"}
    )


def test_ensure_ready_existing_bucket_is_left_alone(mock_s3: MagicMock) -> None:
    S3RemoteStore(mock_s3, "bucket").ensure_ready()

    mock_s3.head_bucket.assert_called_once_with(Bucket="bucket")
    mock_s3.create_bucket.assert_not_called()


def test_ensure_ready_access_denied_is_unavailable(mock_s3: MagicMock) -> None:
    mock_s3.head_bucket.side_effect = _client_error("403", "HeadBucket")

    with pytest.raises(RemoteUnavailableError, match="Cannot open bucket"):
        S3RemoteStore(mock_s3, "bucket").ensure_ready()


def test_ensure_ready_unreachable_endpoint_is_unavailable(mock_s3: MagicMock) -> None:
    mock_s3.head_bucket.side_effect = EndpointConnectionError(endpoint_url="http://nowhere")

    with pytest.raises(RemoteUnavailableError, match="Cannot reach"):
        S3RemoteStore(mock_s3, "bucket").ensure_ready()


def test_factory_uses_named_profile_and_endpoint() -> None:
    with patch("stash_engine.remote_store.s3_store.boto3.session.Session") as session_cls:
        store = create_s3_remote_store(
            bucket="bucket",
            project="backup-account",
            region="eu-west-1",
            endpoint_url="http://minio:9000",
        )

    session_cls.assert_called_once_with(profile_name="backup-account", region_name="eu-west-1")
    session_cls.return_value.client.assert_called_once_with("s3", endpoint_url="http://minio:9000")
    assert store.bucket == "bucket"


def test_undecodable_object_path_is_rejected_before_any_request(tmp_path: Path, mock_s3: MagicMock) -> None:
    store = S3RemoteStore(mock_s3, "bucket")

    with pytest.raises(RemoteStoreError, match="not valid UTF-8"):
        store.upload(_file(tmp_path), "photos/caf\udce9.jpg", 7, DIGEST)

    mock_s3.head_object.assert_not_called()
    mock_s3.upload_file.assert_not_called()

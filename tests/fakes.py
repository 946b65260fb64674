from __future__ import annotations

import hashlib
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from stash_engine.fingerprint import digest_hex
from stash_engine.remote_store.api import ObjectAttrs, UploadResult, resolve_existing
from stash_engine.remote_store.errors import RemoteStoreError, RemoteUnavailableError


@dataclass(frozen=True)
class StoredObject:
    data: bytes
    digest_hex: str
    checksum: str


class FakeRemoteStore:
    """In-memory RemoteStore that records every upload call."""

    def __init__(
        self,
        *,
        fail_paths: set[str] | None = None,
        upload_delay_seconds: float = 0.0,
        unavailable: bool = False,
    ) -> None:
        self.objects: dict[str, StoredObject] = {}
        self.upload_calls: list[str] = []
        self.fail_paths = set(fail_paths or ())
        self.upload_delay_seconds = upload_delay_seconds
        self.unavailable = unavailable
        self.ready_checks = 0
        self._lock = threading.Lock()

    def ensure_ready(self) -> None:
        self.ready_checks += 1
        if self.unavailable:
            raise RemoteUnavailableError("bucket is unreachable")

    def exists(self, object_path: str) -> ObjectAttrs | None:
        with self._lock:
            stored = self.objects.get(object_path)
        if stored is None:
            return None
        return ObjectAttrs(size=len(stored.data), digest_hex=stored.digest_hex, checksum=stored.checksum)

    def upload(self, local_path: Path, object_path: str, size: int, expected_digest: bytes) -> UploadResult:
        with self._lock:
            self.upload_calls.append(object_path)
        if object_path in self.fail_paths:
            raise RemoteStoreError(f"injected failure for {object_path}")

        existing = self.exists(object_path)
        if existing is not None:
            return resolve_existing(existing, object_path, size, expected_digest)

        if self.upload_delay_seconds:
            time.sleep(self.upload_delay_seconds)
        data = local_path.read_bytes()
        checksum = hashlib.md5(data).hexdigest()
        with self._lock:
            self.objects[object_path] = StoredObject(
                data=data, digest_hex=digest_hex(expected_digest), checksum=checksum
            )
        return UploadResult(object_path=object_path, checksum=checksum)

    def uploads_of(self, object_path: str) -> int:
        with self._lock:
            return self.upload_calls.count(object_path)

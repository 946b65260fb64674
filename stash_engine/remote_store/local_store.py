"""
Directory-backed remote store.

Stores objects as plain files under ``<root>/objects/<object path>`` and their
attributes as JSON under ``<root>/attrs/<object path>.json``. Useful for backing
up to a mounted NAS or external disk, and for exercising the engine without
network access.

Safety posture
--------------
- Never overwrites an existing object.
- Objects are staged in a temporary file and moved into place atomically.
- The attributes file is written before the object is moved into place, so an
  object is never visible without its digest attribute.
"""

from __future__ import annotations

import hashlib
import json
import os
import threading
from pathlib import Path
from typing import Final

from stash_engine.fingerprint import digest_hex
from stash_engine.paths_and_safety import SafetyViolationError
from stash_engine.remote_store.api import ObjectAttrs, RemoteStore, UploadResult, resolve_existing
from stash_engine.remote_store.errors import RemoteStoreError, RemoteUnavailableError

_COPY_CHUNK: Final[int] = 1024 * 1024


class LocalDirectoryRemoteStore(RemoteStore):
    """RemoteStore that writes objects into a local directory tree."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root).expanduser().resolve()
        self._objects_root = self._root / "objects"
        self._attrs_root = self._root / "attrs"
        # Serializes the final existence check and move into place.
        self._publish_lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    def ensure_ready(self) -> None:
        """See RemoteStore.ensure_ready."""
        try:
            self._objects_root.mkdir(parents=True, exist_ok=True)
            self._attrs_root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RemoteUnavailableError(f"Cannot prepare storage directory '{self._root}': {exc!s}") from exc

    def _object_file(self, object_path: str) -> Path:
        candidate = (self._objects_root / object_path).resolve()
        try:
            candidate.relative_to(self._objects_root)
        except ValueError as exc:
            raise SafetyViolationError(f"Object path escapes storage root: {object_path!r}") from exc
        return candidate

    def _attrs_file(self, object_path: str) -> Path:
        return self._attrs_root / f"{object_path}.json"

    def exists(self, object_path: str) -> ObjectAttrs | None:
        """See RemoteStore.exists."""
        object_file = self._object_file(object_path)
        try:
            size = object_file.stat().st_size
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise RemoteStoreError(f"Cannot check object '{object_path}': {exc!s}") from exc
        try:
            payload = json.loads(self._attrs_file(object_path).read_text(encoding="utf-8"))
        except FileNotFoundError:
            return ObjectAttrs(size=size, digest_hex="", checksum="")
        except (OSError, json.JSONDecodeError) as exc:
            raise RemoteStoreError(f"Cannot read attributes of '{object_path}': {exc!s}") from exc
        return ObjectAttrs(
            size=size,
            digest_hex=str(payload.get("digest", "")),
            checksum=str(payload.get("md5", "")),
        )

    def upload(self, local_path: Path, object_path: str, size: int, expected_digest: bytes) -> UploadResult:
        """See RemoteStore.upload."""
        existing = self.exists(object_path)
        if existing is not None:
            return resolve_existing(existing, object_path, size, expected_digest)

        object_file = self._object_file(object_path)
        staging = object_file.with_name(f".{object_file.name}.{os.getpid()}.{threading.get_ident()}.partial")
        try:
            object_file.parent.mkdir(parents=True, exist_ok=True)
            checksum, copied = _copy_with_md5(local_path, staging)
            if copied != size:
                raise RemoteStoreError(
                    f"Copied {copied} bytes from '{local_path}', expected {size} (file changed during upload?)"
                )
            _write_json_atomic(
                self._attrs_file(object_path),
                {"digest": digest_hex(expected_digest), "md5": checksum, "size": size},
            )
            with self._publish_lock:
                if object_file.exists():
                    raise RemoteStoreError(f"Object '{object_path}' appeared during upload; refusing to overwrite.")
                os.replace(staging, object_file)
        except OSError as exc:
            raise RemoteStoreError(f"Cannot upload '{local_path}' to '{object_path}': {exc!s}") from exc
        finally:
            staging.unlink(missing_ok=True)
        return UploadResult(object_path=object_path, checksum=checksum)


def _copy_with_md5(source: Path, destination: Path) -> tuple[str, int]:
    hasher = hashlib.md5()
    copied = 0
    with source.open("rb") as reader, destination.open("xb") as writer:
        for chunk in iter(lambda: reader.read(_COPY_CHUNK), b""):
            hasher.update(chunk)
            writer.write(chunk)
            copied += len(chunk)
    return hasher.hexdigest(), copied


def _write_json_atomic(json_path: Path, payload: dict[str, object]) -> None:
    json_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = json_path.with_suffix(json_path.suffix + ".tmp")
    try:
        with temp_path.open("w", encoding="utf-8", newline="\n") as handle:
            json.dump(payload, handle, sort_keys=True, separators=(",", ":"))
            handle.write("\n")
        os.replace(temp_path, json_path)
    finally:
        temp_path.unlink(missing_ok=True)

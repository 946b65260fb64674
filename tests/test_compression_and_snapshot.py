from __future__ import annotations

from pathlib import Path

import pytest
import zstandard as zstd
from fakes import FakeRemoteStore

from stash_engine.backup import snapshot as snapshot_module
from stash_engine.backup.snapshot import snapshot_object_path, upload_store_snapshot
from stash_engine.compression import compress_file
from stash_engine.errors import SnapshotError
from stash_engine.metadata_store.sqlite_store import SqliteMetadataStore, open_metadata_store


def _unzstd(data: bytes) -> bytes:
    return zstd.ZstdDecompressor().decompressobj().decompress(data)


def test_compress_file_produces_a_smaller_zstd_frame(tmp_path: Path) -> None:
    source = tmp_path / "data.bin"
    source.write_bytes(b"coldstash " * 10_000)

    archive = compress_file(source=source, output_path=tmp_path / "data.bin.zst")

    assert archive.stat().st_size < source.stat().st_size
    assert _unzstd(archive.read_bytes()) == source.read_bytes()


def test_compress_refuses_to_overwrite_by_default(tmp_path: Path) -> None:
    source = tmp_path / "data.bin"
    source.write_bytes(b"x")
    target = tmp_path / "out.zst"
    target.write_bytes(b"existing")

    with pytest.raises(ValueError, match="Refusing to overwrite"):
        compress_file(source=source, output_path=target)

    compress_file(source=source, output_path=target, overwrite=True)
    assert target.read_bytes() != b"existing"


def test_snapshot_object_path_is_outside_namespace_prefix() -> None:
    path = snapshot_object_path("photos", "20260101_000000Z-abcdef01")

    assert path == ".coldstash/photos/snapshots/20260101_000000Z-abcdef01.sqlite.zst"
    assert not path.startswith("photos/")


def test_uploaded_snapshot_restores_to_a_working_store(tmp_path: Path) -> None:
    store = open_metadata_store(tmp_path / "stash.db", "photos")
    store.add_if_absent("a.jpg", 10, bytes(32), "RID")
    remote = FakeRemoteStore()

    result = upload_store_snapshot(store=store, remote=remote, run_id="RID", work_root=tmp_path / "work")

    restored_db = tmp_path / "restored.sqlite"
    restored_db.write_bytes(_unzstd(remote.objects[result.object_path].data))
    restored = SqliteMetadataStore(db_path=restored_db, namespace="photos")
    assert [entry.path for entry in restored.iter_entries()] == ["a.jpg"]


@pytest.mark.parametrize("error", [OSError("disk full"), zstd.ZstdError("bad frame")])
def test_snapshot_compression_failure_is_a_snapshot_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, error: Exception
) -> None:
    store = open_metadata_store(tmp_path / "stash.db", "photos")
    remote = FakeRemoteStore()

    def _broken_compress(**_kwargs: object) -> Path:
        raise error

    monkeypatch.setattr(snapshot_module, "compress_file", _broken_compress)

    with pytest.raises(SnapshotError, match="Cannot compress store snapshot"):
        upload_store_snapshot(store=store, remote=remote, run_id="RID", work_root=tmp_path / "work")

    assert remote.upload_calls == []
    assert not (tmp_path / "work" / "RID.sqlite").exists()


def test_snapshot_work_directory_failure_is_a_snapshot_error(tmp_path: Path) -> None:
    store = open_metadata_store(tmp_path / "stash.db", "photos")
    blocker = tmp_path / "work"
    blocker.write_text("not a directory", encoding="utf-8")

    with pytest.raises(SnapshotError, match="work directory"):
        upload_store_snapshot(store=store, remote=FakeRemoteStore(), run_id="RID", work_root=blocker)

from __future__ import annotations

from pathlib import Path

import pytest

from stash_engine.errors import ConfigurationError
from stash_engine.remote_store.factory import create_remote_store
from stash_engine.remote_store.local_store import LocalDirectoryRemoteStore
from stash_engine.settings import BackupSettings, RemoteBackend


def _source(tmp_path: Path) -> Path:
    source = tmp_path / "src"
    source.mkdir(exist_ok=True)
    return source


def test_validate_normalizes_paths_and_name(tmp_path: Path) -> None:
    settings = BackupSettings(
        db_path=tmp_path / "stash.db",
        namespace="  photos ",
        source=_source(tmp_path) / ".." / "src",
        bucket="bucket",
    )

    validated = settings.validate()

    assert validated.namespace == "photos"
    assert validated.source == (tmp_path / "src").resolve()
    assert validated.workers == 20
    assert validated.sample_policy.threshold == 128_000


def test_s3_backend_requires_bucket(tmp_path: Path) -> None:
    settings = BackupSettings(db_path=tmp_path / "stash.db", namespace="photos", source=_source(tmp_path))

    with pytest.raises(ConfigurationError, match="--bucket=myBucket"):
        settings.validate()


def test_local_backend_requires_destination(tmp_path: Path) -> None:
    settings = BackupSettings(
        db_path=tmp_path / "stash.db",
        namespace="photos",
        source=_source(tmp_path),
        backend=RemoteBackend.LOCAL,
    )

    with pytest.raises(ConfigurationError, match="--remote-root"):
        settings.validate()


def test_local_destination_inside_source_is_rejected(tmp_path: Path) -> None:
    source = _source(tmp_path)
    settings = BackupSettings(
        db_path=tmp_path / "stash.db",
        namespace="photos",
        source=source,
        backend=RemoteBackend.LOCAL,
        remote_root=source / "backup",
    )

    with pytest.raises(ConfigurationError, match="inside the source tree"):
        settings.validate()


def test_database_inside_source_is_rejected(tmp_path: Path) -> None:
    source = _source(tmp_path)
    settings = BackupSettings(
        db_path=source / "meta" / "stash.db",
        namespace="photos",
        source=source,
        bucket="bucket",
    )

    with pytest.raises(ConfigurationError, match="Database must not be inside the source tree"):
        settings.validate()


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"workers": 0}, "At least 1 worker"),
        ({"sample_bytes": 0}, "Sample size"),
        ({"namespace": "a/b"}, "invalid characters"),
        ({"namespace": ""}, "must not be empty"),
    ],
)
def test_invalid_values_are_rejected(tmp_path: Path, overrides: dict[str, object], message: str) -> None:
    values: dict[str, object] = {
        "db_path": tmp_path / "stash.db",
        "namespace": "photos",
        "source": _source(tmp_path),
        "bucket": "bucket",
    }
    values.update(overrides)

    with pytest.raises(ConfigurationError, match=message):
        BackupSettings(**values).validate()  # type: ignore[arg-type]


def test_missing_source_is_a_configuration_error(tmp_path: Path) -> None:
    settings = BackupSettings(
        db_path=tmp_path / "stash.db", namespace="photos", source=tmp_path / "nope", bucket="bucket"
    )

    with pytest.raises(ConfigurationError, match="does not exist"):
        settings.validate()


def test_scan_rules_follow_settings(tmp_path: Path) -> None:
    settings = BackupSettings(
        db_path=tmp_path / "stash.db",
        namespace="photos",
        source=_source(tmp_path),
        skip_directory_names=("cache",),
        skip_file_suffixes=(".tmp",),
    )

    rules = settings.scan_rules

    assert rules.skips_directory("cache")
    assert not rules.skips_directory("@eaDir")
    assert rules.skips_file("x.tmp")


def test_factory_builds_local_store(tmp_path: Path) -> None:
    settings = BackupSettings(
        db_path=tmp_path / "stash.db",
        namespace="photos",
        source=_source(tmp_path),
        backend=RemoteBackend.LOCAL,
        remote_root=tmp_path / "remote",
    )

    store = create_remote_store(settings.validate())

    assert isinstance(store, LocalDirectoryRemoteStore)
    assert store.root == (tmp_path / "remote").resolve()

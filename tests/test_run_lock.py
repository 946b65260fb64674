from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping, cast

import pytest

from stash_engine.errors import RunLockError
from stash_engine.run_lock import LOCK_SCHEMA_VERSION, acquire_run_lock


def _write_raw(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _load_json(path: Path) -> Mapping[str, Any]:
    return cast(Mapping[str, Any], json.loads(path.read_text(encoding="utf-8")))


def _lock_payload(**overrides: Any) -> str:
    payload: dict[str, Any] = {
        "schema_version": LOCK_SCHEMA_VERSION,
        "namespace": "photos",
        "created_at_utc": "2026-01-01T00:00:00Z",
        "hostname": "HOST",
        "pid": 1234,
        "run_id": "OLD",
    }
    payload.update(overrides)
    return json.dumps(payload) + "\n"


def test_acquire_run_lock_creates_and_releases_lock(tmp_path: Path) -> None:
    lock_path = tmp_path / "state" / "run.lock"

    with acquire_run_lock(lock_path=lock_path, namespace="photos", run_id="RID") as info:
        assert lock_path.exists()
        payload = _load_json(lock_path)
        assert payload["namespace"] == "photos"
        assert payload["run_id"] == "RID"
        assert payload["pid"] == os.getpid()
        assert info.run_id == "RID"

    assert not lock_path.exists()


def test_lock_is_released_when_the_run_raises(tmp_path: Path) -> None:
    lock_path = tmp_path / "run.lock"

    with pytest.raises(ValueError):
        with acquire_run_lock(lock_path=lock_path, namespace="photos", run_id="RID"):
            raise ValueError("run failed")

    assert not lock_path.exists()


def test_existing_unreadable_lock_blocks_without_break_lock(tmp_path: Path) -> None:
    lock_path = tmp_path / "run.lock"
    _write_raw(lock_path, "not json\n")

    with pytest.raises(RunLockError) as excinfo:
        with acquire_run_lock(lock_path=lock_path, namespace="photos", run_id="RID"):
            raise AssertionError("unreachable")

    assert "could not be read" in str(excinfo.value)
    assert lock_path.exists()


def test_existing_unreadable_lock_can_be_broken_with_break_lock(tmp_path: Path) -> None:
    lock_path = tmp_path / "run.lock"
    _write_raw(lock_path, "not json\n")

    with acquire_run_lock(lock_path=lock_path, namespace="photos", run_id="RID", break_lock=True):
        assert _load_json(lock_path)["run_id"] == "RID"

    assert not lock_path.exists()


def test_provably_stale_lock_requires_force_unless_break_lock(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("stash_engine.run_lock.platform.node", lambda: "HOST")
    monkeypatch.setattr("stash_engine.run_lock.is_pid_running", lambda _pid: False)
    lock_path = tmp_path / "run.lock"
    _write_raw(lock_path, _lock_payload())

    with pytest.raises(RunLockError) as excinfo:
        with acquire_run_lock(lock_path=lock_path, namespace="photos", run_id="RID"):
            raise AssertionError("unreachable")

    assert "Re-run with --force" in str(excinfo.value)

    with acquire_run_lock(lock_path=lock_path, namespace="photos", run_id="RID", force=True):
        assert lock_path.exists()

    assert not lock_path.exists()


def test_live_lock_is_not_broken_by_force(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("stash_engine.run_lock.platform.node", lambda: "HOST")
    monkeypatch.setattr("stash_engine.run_lock.is_pid_running", lambda _pid: True)
    lock_path = tmp_path / "run.lock"
    _write_raw(lock_path, _lock_payload())

    with pytest.raises(RunLockError) as excinfo:
        with acquire_run_lock(lock_path=lock_path, namespace="photos", run_id="RID", force=True):
            raise AssertionError("unreachable")

    message = str(excinfo.value)
    assert "not provably stale" in message
    assert "run_id='OLD'" in message


def test_lock_from_another_host_is_never_provably_stale(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("stash_engine.run_lock.platform.node", lambda: "HOST")
    monkeypatch.setattr("stash_engine.run_lock.is_pid_running", lambda _pid: False)
    lock_path = tmp_path / "run.lock"
    _write_raw(lock_path, _lock_payload(hostname="ELSEWHERE"))

    with pytest.raises(RunLockError, match="--break-lock"):
        with acquire_run_lock(lock_path=lock_path, namespace="photos", run_id="RID", force=True):
            raise AssertionError("unreachable")


def test_release_leaves_a_lock_taken_over_by_another_run(tmp_path: Path) -> None:
    lock_path = tmp_path / "run.lock"

    with acquire_run_lock(lock_path=lock_path, namespace="photos", run_id="RID"):
        lock_path.write_text(_lock_payload(run_id="OTHER"), encoding="utf-8")

    assert _load_json(lock_path)["run_id"] == "OTHER"

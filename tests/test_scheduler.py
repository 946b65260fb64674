from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable

import pytest

from stash_engine.backup import scheduler
from stash_engine.backup.decide import FileOutcome, FileOutcomeKind
from stash_engine.backup.scan import DEFAULT_SCAN_RULES, ScanRules, WorkItem
from stash_engine.backup.scheduler import run_worker_pool
from stash_engine.backup.touched import TouchedSet
from stash_engine.errors import TraversalError


def _make_tree(root: Path, count: int) -> None:
    for index in range(count):
        path = root / f"d{index % 3}" / f"f{index:03d}.txt"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"file {index}", encoding="utf-8")


def _unchanged(item: WorkItem) -> FileOutcome:
    return FileOutcome(kind=FileOutcomeKind.UNCHANGED, path=item.absolute_path.name)


def test_every_file_is_processed_once(tmp_path: Path) -> None:
    _make_tree(tmp_path, 30)

    result = run_worker_pool(
        source_root=tmp_path,
        rules=DEFAULT_SCAN_RULES,
        process=_unchanged,
        touched=TouchedSet(),
        workers=5,
    )

    assert result.completed
    assert result.queued == 30
    assert sorted(o.path for o in result.outcomes) == [f"f{i:03d}.txt" for i in range(30)]


def test_queue_bounds_items_in_flight(tmp_path: Path) -> None:
    _make_tree(tmp_path, 40)
    workers = 2
    release = threading.Event()
    started = threading.Semaphore(0)
    emitted: list[int] = []

    def _slow(item: WorkItem) -> FileOutcome:
        started.release()
        release.wait(timeout=10)
        return _unchanged(item)

    real_walk = scheduler.walk_source_tree

    def _counting_walk(
        source_root: Path,
        rules: ScanRules,
        *,
        emit: Callable[[WorkItem], None],
        on_issue: Callable[..., None],
    ) -> int:
        def _emit(item: WorkItem) -> None:
            emit(item)
            emitted.append(1)

        return real_walk(source_root, rules, emit=_emit, on_issue=on_issue)

    result_box: list[object] = []
    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(scheduler, "walk_source_tree", _counting_walk)
        runner = threading.Thread(
            target=lambda: result_box.append(
                run_worker_pool(
                    source_root=tmp_path,
                    rules=DEFAULT_SCAN_RULES,
                    process=_slow,
                    touched=TouchedSet(),
                    workers=workers,
                    queue_factor=2,
                )
            )
        )
        runner.start()
        for _ in range(workers):
            assert started.acquire(timeout=10)
        time.sleep(0.2)

        # Each blocked worker holds one item and the queue holds queue_factor * workers more.
        assert len(emitted) <= workers + 2 * workers + 1

        release.set()
        runner.join(timeout=30)

    assert not runner.is_alive()
    assert len(emitted) == 40


def test_traversal_error_still_drains_queued_items(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    items = [WorkItem(absolute_path=tmp_path / f"f{i}.txt", size_bytes=1) for i in range(5)]

    def _broken_walk(
        source_root: Path,
        rules: ScanRules,
        *,
        emit: Callable[[WorkItem], None],
        on_issue: Callable[..., None],
    ) -> int:
        for item in items:
            emit(item)
        raise TraversalError("Cannot read directory 'x': denied")

    monkeypatch.setattr("stash_engine.backup.scheduler.walk_source_tree", _broken_walk)

    result = run_worker_pool(
        source_root=tmp_path,
        rules=DEFAULT_SCAN_RULES,
        process=_unchanged,
        touched=TouchedSet(),
        workers=3,
    )

    assert not result.completed
    assert isinstance(result.traversal_error, TraversalError)
    assert len(result.outcomes) == 5


def test_unexpected_exception_becomes_failed_outcome(tmp_path: Path) -> None:
    _make_tree(tmp_path, 3)

    def _explode(item: WorkItem) -> FileOutcome:
        if item.absolute_path.name == "f001.txt":
            raise KeyError("boom")
        return _unchanged(item)

    result = run_worker_pool(
        source_root=tmp_path,
        rules=DEFAULT_SCAN_RULES,
        process=_explode,
        touched=TouchedSet(),
        workers=2,
    )

    failed = [o for o in result.outcomes if o.kind is FileOutcomeKind.FAILED]
    assert len(result.outcomes) == 3
    assert len(failed) == 1
    assert "boom" in failed[0].message


def test_raising_outcome_callback_does_not_stop_the_pool(tmp_path: Path) -> None:
    _make_tree(tmp_path, 4)

    def _bad_callback(outcome: FileOutcome) -> None:
        raise RuntimeError("printer broke")

    result = run_worker_pool(
        source_root=tmp_path,
        rules=DEFAULT_SCAN_RULES,
        process=_unchanged,
        touched=TouchedSet(),
        workers=2,
        on_outcome=_bad_callback,
    )

    assert len(result.outcomes) == 4
    assert len(result.callback_errors) == 4


def test_raising_issue_callback_does_not_abort_the_walk(tmp_path: Path) -> None:
    _make_tree(tmp_path, 3)
    (tmp_path / "empty.txt").write_bytes(b"")

    def _bad_callback(issue: object) -> None:
        raise OSError("journal disk full")

    result = run_worker_pool(
        source_root=tmp_path,
        rules=DEFAULT_SCAN_RULES,
        process=_unchanged,
        touched=TouchedSet(),
        workers=2,
        on_issue=_bad_callback,
    )

    assert result.completed
    assert len(result.outcomes) == 3
    assert len(result.scan_issues) == 1
    assert len(result.callback_errors) == 1
    assert "journal disk full" in result.callback_errors[0]


def test_workers_must_be_positive(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="workers"):
        run_worker_pool(
            source_root=tmp_path,
            rules=DEFAULT_SCAN_RULES,
            process=_unchanged,
            touched=TouchedSet(),
            workers=0,
        )


def test_touched_set_reports_first_and_repeat_marks() -> None:
    touched = TouchedSet()

    assert touched.mark(1) is False
    assert touched.mark(1) is True
    assert 1 in touched
    assert len(touched) == 1
    assert touched.snapshot() == frozenset({1})

"""
Concurrent tree walk: one producer, a fixed pool of worker threads.

The calling thread walks the source tree and pushes WorkItems onto a bounded
``queue.Queue``. Its capacity is ``queue_factor * workers``; a full queue
blocks the walk, which is the only flow control in a run. Each worker pulls one
item at a time and runs it end to end (fingerprint, store, upload) with no
further concurrency inside it.

A run is complete when the walk has finished (or aborted), one stop sentinel
per worker has been queued, and every worker thread has been joined.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Final, cast

from stash_engine.backup.decide import FileOutcome, FileOutcomeKind
from stash_engine.backup.scan import ScanIssue, ScanRules, WorkItem, walk_source_tree
from stash_engine.backup.touched import TouchedSet
from stash_engine.errors import TraversalError

DEFAULT_QUEUE_FACTOR: Final[int] = 2

_STOP: Final[object] = object()

ProcessFn = Callable[[WorkItem], FileOutcome]
OutcomeCallback = Callable[[FileOutcome], None]
IssueCallback = Callable[[ScanIssue], None]


@dataclass(frozen=True, slots=True)
class WalkResult:
    """
    Everything a run accumulated, returned even when the walk aborted.

    Attributes
    ----------
    touched:
        Entry ids observed in this run.
    outcomes:
        One outcome per processed file, in completion order.
    scan_issues:
        Non-fatal traversal issues, in walk order.
    queued:
        Number of items pushed onto the work queue.
    traversal_error:
        The error that aborted the walk, if any.
    callback_errors:
        Messages from outcome or issue callbacks that raised.
    """

    touched: TouchedSet
    outcomes: list[FileOutcome]
    scan_issues: list[ScanIssue]
    queued: int
    traversal_error: TraversalError | None = None
    callback_errors: list[str] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.traversal_error is None


class _Collector:
    """Thread-safe accumulation of worker results."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.outcomes: list[FileOutcome] = []
        self.callback_errors: list[str] = []

    def add_outcome(self, outcome: FileOutcome) -> None:
        with self._lock:
            self.outcomes.append(outcome)

    def add_callback_error(self, message: str) -> None:
        with self._lock:
            self.callback_errors.append(message)


def run_worker_pool(
    *,
    source_root: Path,
    rules: ScanRules,
    process: ProcessFn,
    touched: TouchedSet,
    workers: int,
    queue_factor: int = DEFAULT_QUEUE_FACTOR,
    on_outcome: OutcomeCallback | None = None,
    on_issue: IssueCallback | None = None,
) -> WalkResult:
    """
    Walk ``source_root`` and process every eligible file on a worker pool.

    Parameters
    ----------
    source_root:
        Resolved root directory.
    rules:
        Skip rules for the walk.
    process:
        Per-file handler, normally ``DedupDecisionEngine.process``.
    touched:
        The run's TouchedSet (shared with ``process``), returned in the result.
    workers:
        Number of worker threads. Must be at least 1.
    queue_factor:
        Queue capacity per worker.
    on_outcome:
        Called from worker threads after each file.
    on_issue:
        Called from the walking thread for each scan issue. Errors it raises
        are recorded in ``callback_errors`` and never abort the walk.

    Returns
    -------
    WalkResult
        Outcomes, issues and touched ids. ``traversal_error`` is set if the
        walk aborted; workers still drained every item queued before that.

    Raises
    ------
    ValueError
        If ``workers`` or ``queue_factor`` is less than 1.
    """
    if workers < 1:
        raise ValueError("workers must be at least 1.")
    if queue_factor < 1:
        raise ValueError("queue_factor must be at least 1.")

    work: queue.Queue[object] = queue.Queue(maxsize=queue_factor * workers)
    collector = _Collector()
    issues: list[ScanIssue] = []

    def _record_issue(issue: ScanIssue) -> None:
        issues.append(issue)
        if on_issue is not None:
            try:
                on_issue(issue)
            except Exception as exc:  # noqa: BLE001 - reporting must not stop the walk
                collector.add_callback_error(f"{issue.path}: {exc!r}")

    def _worker() -> None:
        while True:
            item = work.get()
            try:
                if item is _STOP:
                    return
                outcome = _process_guarded(process, cast(WorkItem, item))
                collector.add_outcome(outcome)
                if on_outcome is not None:
                    try:
                        on_outcome(outcome)
                    except Exception as exc:  # noqa: BLE001 - reporting must not stop the pool
                        collector.add_callback_error(f"{outcome.path}: {exc!r}")
            finally:
                work.task_done()

    threads = [
        threading.Thread(target=_worker, name=f"coldstash-worker-{index}", daemon=True)
        for index in range(workers)
    ]
    for thread in threads:
        thread.start()

    queued = 0
    traversal_error: TraversalError | None = None

    def _emit(item: WorkItem) -> None:
        nonlocal queued
        work.put(item)
        queued += 1

    try:
        walk_source_tree(source_root, rules, emit=_emit, on_issue=_record_issue)
    except TraversalError as exc:
        traversal_error = exc
    finally:
        for _ in threads:
            work.put(_STOP)
        for thread in threads:
            thread.join()

    return WalkResult(
        touched=touched,
        outcomes=collector.outcomes,
        scan_issues=issues,
        queued=queued,
        traversal_error=traversal_error,
        callback_errors=collector.callback_errors,
    )


def _process_guarded(process: ProcessFn, item: WorkItem) -> FileOutcome:
    """Run ``process``; an unexpected exception becomes a FAILED outcome instead of killing the worker."""
    try:
        return process(item)
    except Exception as exc:  # noqa: BLE001 - one file must never take a worker down
        return FileOutcome(
            kind=FileOutcomeKind.FAILED,
            path=str(item.absolute_path),
            message=f"Unexpected error: {exc!r}",
        )

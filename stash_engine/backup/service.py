"""
Backup orchestration for coldstash.

This module coordinates one run:
- settings validation (fatal before any work)
- the per-namespace run lock
- metadata store and remote store readiness (fatal before any work)
- the concurrent walk and per-file decisions
- the missing-file report
- optional metadata store snapshot upload
- reporting: progress lines, summary text, and the JSONL run journal

Safety posture
--------------
- Never deletes local files, remote objects, or store entries.
- Per-file failures are reported and the run continues.
- A walk aborted by an unreadable directory still drains the workers and
  prints the summary, then raises TraversalError. The missing-file report is
  skipped in that case because a partial walk would flag every unvisited
  entry.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path

from stash_engine.backup.decide import DedupDecisionEngine, FileOutcome, FileOutcomeKind
from stash_engine.backup.missing import MissingReport, find_missing
from stash_engine.backup.render import (
    count_outcomes,
    format_issue_line,
    format_outcome_line,
    render_run_summary,
)
from stash_engine.backup.scan import ScanIssue
from stash_engine.backup.scheduler import DEFAULT_QUEUE_FACTOR, WalkResult, run_worker_pool
from stash_engine.backup.snapshot import upload_store_snapshot
from stash_engine.backup.touched import TouchedSet
from stash_engine.clock import Clock, SystemClock, new_run_id
from stash_engine.errors import ConfigurationError, StashError, TraversalError
from stash_engine.journal import RunJournal
from stash_engine.metadata_store.api import CorruptEntry, Entry
from stash_engine.metadata_store.sqlite_store import open_metadata_store
from stash_engine.paths_and_safety import printable, resolve_state_paths
from stash_engine.remote_store.api import RemoteStore, UploadResult
from stash_engine.remote_store.factory import create_remote_store
from stash_engine.run_lock import acquire_run_lock
from stash_engine.settings import BackupSettings


@dataclass(frozen=True, slots=True)
class BackupRunReport:
    """
    Everything a finished run produced.

    Attributes
    ----------
    run_id:
        Run identifier (also the upload claim token).
    namespace:
        Backup name.
    source_root:
        Walked directory.
    walk:
        Worker pool result: outcomes, issues, touched ids.
    missing:
        Missing-file report, or None if the walk aborted.
    journal_path:
        JSONL journal written for the run.
    snapshot:
        Uploaded store snapshot, when requested.
    """

    run_id: str
    namespace: str
    source_root: Path
    walk: WalkResult
    missing: MissingReport | None
    journal_path: Path
    snapshot: UploadResult | None = None

    def count(self, kind: FileOutcomeKind) -> int:
        """Number of files with the given outcome."""
        return count_outcomes(self.walk.outcomes)[kind]

    def outcome_for(self, path: str) -> FileOutcome | None:
        """Return the outcome recorded for a logical path, if any."""
        for outcome in self.walk.outcomes:
            if outcome.path == path:
                return outcome
        return None


class _LinePrinter:
    """Serializes progress lines printed from worker threads and escapes undecodable file names."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def emit(self, line: str = "") -> None:
        with self._lock:
            print(printable(line), flush=True)


def run_backup(
    settings: BackupSettings,
    *,
    remote: RemoteStore | None = None,
    clock: Clock | None = None,
    max_items: int = 100,
    queue_factor: int = DEFAULT_QUEUE_FACTOR,
) -> BackupRunReport:
    """
    Run one deduplicating backup of ``settings.source``.

    Parameters
    ----------
    settings:
        Run settings. Validated before anything else happens.
    remote:
        Remote store to use instead of the one ``settings`` describes.
    clock:
        Time source for the run id and journal.
    max_items:
        Maximum number of failures and missing entries listed in the summary.
    queue_factor:
        Work queue capacity per worker.

    Returns
    -------
    BackupRunReport
        Outcomes and reports of the completed run.

    Raises
    ------
    ConfigurationError
        If settings are invalid.
    RunLockError
        If another run holds the namespace.
    StoreOpenError
        If the metadata store cannot be opened.
    RemoteUnavailableError
        If the remote store cannot be reached or provisioned.
    TraversalError
        If the walk aborted. Outcomes were still recorded and summarized.
    SnapshotError, MetadataStoreError, RemoteStoreError
        If the requested store snapshot failed. The run itself finished and was
        journaled.
    OSError
        If the run journal cannot be written.
    """
    if max_items < 0:
        raise ValueError("max_items must be non-negative.")

    validated = settings.validate()
    run_clock = clock or SystemClock()
    run_id = new_run_id(run_clock)
    state = resolve_state_paths(validated.db_path, validated.namespace)
    remote_store = remote if remote is not None else create_remote_store(validated)

    with acquire_run_lock(
        lock_path=state.lock_path,
        namespace=validated.namespace,
        run_id=run_id,
        force=validated.force,
        break_lock=validated.break_lock,
        clock=run_clock,
    ):
        printer = _LinePrinter()
        printer.emit(f"Database in {validated.db_path}")
        store = open_metadata_store(validated.db_path, validated.namespace)
        remote_store.ensure_ready()

        journal = RunJournal(state.journal_root / f"{run_id}.jsonl", clock=run_clock)
        journal.append(
            "run_started",
            {
                "run_id": run_id,
                "namespace": validated.namespace,
                "source_root": str(validated.source),
                "workers": validated.workers,
                "sample_bytes": validated.sample_bytes,
            },
        )

        def _on_outcome(outcome: FileOutcome) -> None:
            journal.append("file_outcome", outcome.to_dict())
            line = format_outcome_line(outcome)
            if line is not None:
                printer.emit(line)

        def _on_issue(issue: ScanIssue) -> None:
            journal.append(
                "scan_issue",
                {"path": str(issue.path), "kind": issue.kind.value, "message": issue.message},
            )
            printer.emit(format_issue_line(issue))

        touched = TouchedSet()
        engine = DedupDecisionEngine(
            store=store,
            remote=remote_store,
            touched=touched,
            source_root=validated.source,
            namespace=validated.namespace,
            run_id=run_id,
            sample_policy=validated.sample_policy,
        )

        printer.emit(f"Walking into {validated.source}")
        walk = run_worker_pool(
            source_root=validated.source,
            rules=validated.scan_rules,
            process=engine.process,
            touched=touched,
            workers=validated.workers,
            queue_factor=queue_factor,
            on_outcome=_on_outcome,
            on_issue=_on_issue,
        )
        for message in walk.callback_errors:
            printer.emit(f"WARNING: progress reporting failed for {message}")

        missing: MissingReport | None = None
        if walk.completed:
            missing = find_missing(store, walk.touched)
            for entry in missing.missing:
                journal.append("missing_entry", entry.to_dict())
            for corrupt in missing.corrupt:
                journal.append("corrupt_entry", {"key": corrupt.key_hex, "message": corrupt.message})

        printer.emit()
        printer.emit(
            render_run_summary(
                namespace=validated.namespace,
                run_id=run_id,
                source_root=validated.source,
                walk=walk,
                missing=missing,
                max_items=max_items,
            )
        )

        snapshot: UploadResult | None = None
        snapshot_error: StashError | None = None
        if validated.snapshot_store and walk.completed:
            try:
                snapshot = upload_store_snapshot(
                    store=store,
                    remote=remote_store,
                    run_id=run_id,
                    work_root=state.work_root,
                )
            except StashError as exc:
                snapshot_error = exc
                journal.append("store_snapshot_failed", {"message": str(exc)})
                printer.emit(f"Store snapshot failed: {exc}")
            else:
                journal.append("store_snapshot", {"object_path": snapshot.object_path, "checksum": snapshot.checksum})
                printer.emit(f"Store snapshot uploaded: {snapshot.object_path}")

        journal.append(
            "run_finished",
            {
                "completed": walk.completed,
                "counts": {kind.value: n for kind, n in count_outcomes(walk.outcomes).items()},
                "scan_issues": len(walk.scan_issues),
                "missing": len(missing.missing) if missing is not None else None,
                "snapshot_failed": snapshot_error is not None,
            },
        )
        printer.emit(f"Journal written: {journal.path}")

        if walk.traversal_error is not None:
            raise TraversalError(f"Cannot walk '{validated.source}': {walk.traversal_error}") from walk.traversal_error
        if snapshot_error is not None:
            raise snapshot_error

        return BackupRunReport(
            run_id=run_id,
            namespace=validated.namespace,
            source_root=validated.source,
            walk=walk,
            missing=missing,
            journal_path=journal.path,
            snapshot=snapshot,
        )


def list_entries(
    db_path: Path,
    namespace: str,
    *,
    incomplete_only: bool = False,
) -> tuple[list[Entry], list[CorruptEntry]]:
    """
    Read the entries of one namespace in key order.

    The database must already exist; inspection never creates a store.

    Parameters
    ----------
    db_path:
        Metadata store database.
    namespace:
        Backup name.
    incomplete_only:
        Only return entries whose upload never completed.

    Raises
    ------
    ConfigurationError
        If the database does not exist.
    StoreOpenError
        If the database cannot be opened.
    """
    expanded = Path(db_path).expanduser()
    if not expanded.is_file():
        raise ConfigurationError(f"Metadata store does not exist: {expanded}")
    store = open_metadata_store(expanded, namespace)

    entries: list[Entry] = []
    corrupt: list[CorruptEntry] = []

    def _visit(entry: Entry) -> None:
        if incomplete_only and entry.is_complete:
            return
        entries.append(entry)

    store.for_each_entry(_visit, on_corrupt=corrupt.append)
    return entries, corrupt

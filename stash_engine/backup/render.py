"""
Rendering for backup run output.

Per-file lines are printed as outcomes arrive; the summary is rendered once the
run has drained and is deterministic for a given set of outcomes, regardless of
the order in which workers finished.
"""

from __future__ import annotations

from pathlib import Path

from stash_engine.backup.decide import FileOutcome, FileOutcomeKind
from stash_engine.backup.missing import MissingEntry, MissingReport
from stash_engine.backup.scan import ScanIssue
from stash_engine.backup.scheduler import WalkResult

_OUTCOME_ORDER: tuple[FileOutcomeKind, ...] = (
    FileOutcomeKind.UPLOADED,
    FileOutcomeKind.RESUMED_UPLOAD,
    FileOutcomeKind.RENAMED,
    FileOutcomeKind.UNCHANGED,
    FileOutcomeKind.DUPLICATE,
    FileOutcomeKind.FAILED,
)


def format_outcome_line(outcome: FileOutcome) -> str | None:
    """
    Render one file outcome as a progress line.

    Returns
    -------
    str | None
        The line, or None for outcomes that are not worth a line (UNCHANGED).
    """
    if outcome.kind is FileOutcomeKind.UPLOADED:
        return f"Uploaded '{outcome.path}'"
    if outcome.kind is FileOutcomeKind.RESUMED_UPLOAD:
        return f"Uploaded '{outcome.path}' (resumed incomplete upload)"
    if outcome.kind is FileOutcomeKind.RENAMED:
        return f"File '{outcome.related_path}' has been renamed to '{outcome.path}'"
    if outcome.kind is FileOutcomeKind.DUPLICATE:
        return f"File '{outcome.path}' is likely a duplicate of '{outcome.related_path}'"
    if outcome.kind is FileOutcomeKind.FAILED:
        key = f" [key {outcome.key_hex}]" if outcome.key_hex else ""
        return f"Cannot process file '{outcome.path}'{key}: {outcome.message}"
    return None


def format_issue_line(issue: ScanIssue) -> str:
    """Render one scan issue."""
    return f"Skipped '{issue.path}': {issue.message}"


def format_missing_line(entry: MissingEntry) -> str:
    """Render one missing entry."""
    state = "" if entry.complete else " (never uploaded)"
    return f"Missing {entry.key_hex} '{entry.path}'{state}"


def count_outcomes(outcomes: list[FileOutcome]) -> dict[FileOutcomeKind, int]:
    """Count outcomes by kind. Every kind is present in the result."""
    counts = {kind: 0 for kind in _OUTCOME_ORDER}
    for outcome in outcomes:
        counts[outcome.kind] += 1
    return counts


def render_run_summary(
    *,
    namespace: str,
    run_id: str,
    source_root: Path,
    walk: WalkResult,
    missing: MissingReport | None,
    max_items: int = 100,
) -> str:
    """
    Render the end-of-run summary as deterministic plain text.

    Parameters
    ----------
    namespace:
        Backup name.
    run_id:
        Run identifier.
    source_root:
        Walked directory.
    walk:
        Result of the worker pool.
    missing:
        Missing-file report, or None when it was not computed.
    max_items:
        Maximum number of failures and missing entries listed. Counts always
        reflect the full run. Must be non-negative.

    Raises
    ------
    ValueError
        If max_items is negative.
    """
    if max_items < 0:
        raise ValueError("max_items must be non-negative.")

    lines: list[str] = []
    lines.append("Backup run summary")
    lines.append(f"Backup name : {namespace}")
    lines.append(f"Run ID      : {run_id}")
    lines.append(f"Source root : {source_root}")
    lines.append(f"Status      : {'complete' if walk.completed else 'walk aborted'}")
    lines.append("")

    counts = count_outcomes(walk.outcomes)
    lines.append(f"files_processed: {len(walk.outcomes)}")
    for kind in _OUTCOME_ORDER:
        lines.append(f"{kind.value}: {counts[kind]}")
    lines.append(f"scan_issues: {len(walk.scan_issues)}")

    failures = sorted(
        (o for o in walk.outcomes if o.kind is FileOutcomeKind.FAILED),
        key=lambda o: o.path,
    )
    if failures:
        lines.append("")
        lines.append("Failures:")
        lines.extend(_limited([f"- {o.path}: {o.message}" for o in failures], max_items))

    lines.append("")
    if missing is None:
        lines.append("missing: not checked (walk did not complete)")
    else:
        lines.append(f"missing: {len(missing.missing)} of {missing.scanned} entries")
        if missing.missing:
            lines.extend(_limited([f"- {format_missing_line(m)}" for m in missing.missing], max_items))
        if missing.corrupt:
            lines.append(f"corrupt_entries: {len(missing.corrupt)}")
            lines.extend(_limited([f"- {c.key_hex}: {c.message}" for c in missing.corrupt], max_items))

    if walk.traversal_error is not None:
        lines.append("")
        lines.append(f"Walk aborted: {walk.traversal_error}")

    return "\n".join(lines)


def _limited(lines: list[str], max_items: int) -> list[str]:
    shown = lines[:max_items]
    if len(lines) > max_items:
        shown.append(f"... ({len(lines) - max_items} more not shown)")
    return shown

"""
Source tree traversal for backup runs.

This module walks a source root depth-first and hands every eligible file to a
caller-supplied ``emit`` callback, which in a run pushes onto the bounded work
queue (and therefore blocks when workers fall behind). It performs no writes.

Policy
------
- Directories whose name is in the skip set are pruned (not descended).
- Files whose name ends with any skip suffix are ignored. A suffix may be a
  whole file name, such as ``thumbs.db``.
- Zero-byte files are reported as issues, not emitted.
- Symlinks are never followed and are reported as issues.
- Enumeration order is deterministic: directory and file names are sorted.
- A directory that cannot be read aborts the walk with TraversalError.
"""

from __future__ import annotations

import os
import stat
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable

from stash_engine.errors import TraversalError


@dataclass(frozen=True, slots=True)
class WorkItem:
    """
    A file queued for the decision engine.

    Attributes
    ----------
    absolute_path:
        Path to the file.
    size_bytes:
        File size observed during traversal.
    """

    absolute_path: Path
    size_bytes: int


class ScanIssueKind(str, Enum):
    """Non-fatal traversal issue identifiers. Written to the run journal."""

    EMPTY_FILE = "empty_file"
    SYMLINK = "symlink"
    NOT_REGULAR_FILE = "not_regular_file"
    STAT_FAILED = "stat_failed"


@dataclass(frozen=True, slots=True)
class ScanIssue:
    """
    A non-fatal issue encountered while walking.

    Attributes
    ----------
    path:
        The path that triggered the issue.
    kind:
        Issue identifier.
    message:
        Human-readable explanation.
    """

    path: Path
    kind: ScanIssueKind
    message: str


@dataclass(frozen=True, slots=True)
class ScanRules:
    """
    Rules that control which directories and files are walked.

    Attributes
    ----------
    skip_directory_names:
        Directory names pruned anywhere in the tree (name match only).
    skip_file_suffixes:
        File name suffixes ignored anywhere in the tree.
    """

    skip_directory_names: frozenset[str]
    skip_file_suffixes: tuple[str, ...]

    def skips_directory(self, name: str) -> bool:
        return name in self.skip_directory_names

    def skips_file(self, name: str) -> bool:
        return any(name.endswith(suffix) for suffix in self.skip_file_suffixes if suffix)


DEFAULT_SKIP_DIRECTORY_NAMES: frozenset[str] = frozenset({"@eaDir", ".thumbcache"})

DEFAULT_SKIP_FILE_SUFFIXES: tuple[str, ...] = (".dttags", ".ini", "thumbs.db", ".DS_Store")

DEFAULT_SCAN_RULES = ScanRules(
    skip_directory_names=DEFAULT_SKIP_DIRECTORY_NAMES,
    skip_file_suffixes=DEFAULT_SKIP_FILE_SUFFIXES,
)


def parse_name_list(raw: str | Iterable[str] | None) -> tuple[str, ...]:
    """
    Split a comma-separated list of names, dropping blanks.

    Parameters
    ----------
    raw:
        Either a single comma-separated string or an iterable of such strings.

    Returns
    -------
    tuple[str, ...]
        Names in input order, without duplicates.
    """
    if raw is None:
        return ()
    chunks = [raw] if isinstance(raw, str) else list(raw)
    names: list[str] = []
    for chunk in chunks:
        for part in chunk.split(","):
            name = part.strip()
            if name and name not in names:
                names.append(name)
    return tuple(names)


def _raise_traversal_error(exc: OSError) -> None:
    raise TraversalError(f"Cannot read directory '{exc.filename}': {exc.strerror or exc}") from exc


def walk_source_tree(
    source_root: Path,
    rules: ScanRules,
    *,
    emit: Callable[[WorkItem], None],
    on_issue: Callable[[ScanIssue], None],
) -> int:
    """
    Walk ``source_root`` and emit one WorkItem per eligible file.

    Parameters
    ----------
    source_root:
        Resolved root directory.
    rules:
        Skip rules.
    emit:
        Called for every eligible file, in deterministic order. May block.
    on_issue:
        Called for every non-fatal issue.

    Returns
    -------
    int
        Number of items emitted.

    Raises
    ------
    TraversalError
        If a directory cannot be read. Items emitted before the failure stay
        emitted.
    """
    emitted = 0
    for directory_path, directory_names, file_names in os.walk(
        source_root,
        topdown=True,
        onerror=_raise_traversal_error,
        followlinks=False,
    ):
        current_directory = Path(directory_path)

        kept_directories: list[str] = []
        for name in sorted(directory_names):
            if rules.skips_directory(name):
                continue
            candidate = current_directory / name
            if candidate.is_symlink():
                on_issue(ScanIssue(candidate, ScanIssueKind.SYMLINK, "Skipped symlinked directory."))
                continue
            kept_directories.append(name)
        directory_names[:] = kept_directories

        for file_name in sorted(file_names):
            if rules.skips_file(file_name):
                continue

            absolute_path = current_directory / file_name
            try:
                stat_result = os.lstat(absolute_path)
            except OSError as exc:
                on_issue(ScanIssue(absolute_path, ScanIssueKind.STAT_FAILED, f"Failed to stat file: {exc!s}"))
                continue

            if stat.S_ISLNK(stat_result.st_mode):
                on_issue(ScanIssue(absolute_path, ScanIssueKind.SYMLINK, "Skipped symlink."))
                continue
            if not stat.S_ISREG(stat_result.st_mode):
                on_issue(ScanIssue(absolute_path, ScanIssueKind.NOT_REGULAR_FILE, "Skipped non-regular file."))
                continue
            if stat_result.st_size <= 0:
                on_issue(ScanIssue(absolute_path, ScanIssueKind.EMPTY_FILE, "File is empty."))
                continue

            emit(WorkItem(absolute_path=absolute_path, size_bytes=int(stat_result.st_size)))
            emitted += 1

    return emitted

"""
Filesystem path policy and safety gates.

This module is the single choke point for deciding which local paths coldstash
reads, where it keeps its own state, and how local files are named in the
metadata store and on the remote store.

- The source root must be an existing directory and not a filesystem root.
- Namespaces (backup names) are simple folder-like names, because they are
  used as remote object prefixes and as local folder names.
- Logical paths are posix-style and always relative to the source root.
- Run state (journals, locks) lives next to the metadata store database.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from stash_engine.errors import StashError

_NAMESPACE_FORBIDDEN_CHARS = '\\/:*?"<>|'


class SafetyViolationError(StashError):
    """Raised when an operation is blocked by safety policy."""


@dataclass(frozen=True, slots=True)
class StatePaths:
    """
    Concrete paths of run state for one store and namespace.

    Attributes
    ----------
    db_path:
        The metadata store database.
    journal_root:
        Directory holding one JSONL journal per run.
    lock_path:
        Run lock file for the namespace.
    work_root:
        Scratch directory for temporary artifacts such as store snapshots.
    """

    db_path: Path
    journal_root: Path
    lock_path: Path
    work_root: Path


def validate_namespace(namespace: str) -> str:
    """
    Validate a backup namespace name and return it stripped.

    Raises
    ------
    SafetyViolationError
        If the name is empty, is '.' or '..', or contains path separators,
        drive hints or glob characters.
    """
    name = namespace.strip()
    if not name:
        raise SafetyViolationError("Backup name must not be empty.")
    if name in {".", ".."}:
        raise SafetyViolationError("Backup name must not be '.' or '..'.")
    if any(ch in name for ch in _NAMESPACE_FORBIDDEN_CHARS):
        raise SafetyViolationError(f"Backup name contains invalid characters: {name!r}")
    return name


def resolve_state_paths(db_path: Path, namespace: str) -> StatePaths:
    """
    Resolve where run state for ``namespace`` is kept, next to ``db_path``.

    Parameters
    ----------
    db_path:
        Metadata store database path.
    namespace:
        Backup name.

    Returns
    -------
    StatePaths
        Resolved state paths. No directories are created.
    """
    name = validate_namespace(namespace)
    db = Path(db_path).expanduser().resolve()
    state_root = db.parent / f"{db.name}.state" / name
    return StatePaths(
        db_path=db,
        journal_root=state_root / "journal",
        lock_path=state_root / "run.lock",
        work_root=state_root / "work",
    )


def validate_source_path(source: Path) -> Path:
    """Validate a backup source path and return its resolved absolute form.

    Safety goals:
    - Must exist and be a directory
    - Disallow filesystem roots
    - Normalize to an absolute resolved path

    Raises
    ------
    SafetyViolationError
        If the source path does not exist, is not a directory, or is unsafe.
    """
    source = Path(source).expanduser()

    try:
        resolved = source.resolve(strict=True)
    except FileNotFoundError as exc:
        raise SafetyViolationError(f"Source path does not exist: {source}") from exc

    if not resolved.is_dir():
        raise SafetyViolationError(f"Source path is not a directory: {resolved}")

    if len(resolved.parts) <= 1:
        raise SafetyViolationError(f"Refusing to use filesystem root as source: {resolved}")

    return resolved


def logical_path(source_root: Path, file_path: Path) -> str:
    """
    Return the posix path of ``file_path`` relative to ``source_root``.

    Raises
    ------
    SafetyViolationError
        If the file is outside the root or the relative path is not clean.
    """
    try:
        relative = file_path.relative_to(source_root)
    except ValueError as exc:
        raise SafetyViolationError(f"File {file_path} is not within source root {source_root}") from exc

    if relative.is_absolute() or ".." in relative.parts or not relative.parts:
        raise SafetyViolationError(f"Unsafe relative path derived: {relative}")
    return relative.as_posix()


def remote_object_path(namespace: str, relative: str) -> str:
    """
    Build the remote object path for a logical path: ``<namespace>/<relative>``.

    Raises
    ------
    SafetyViolationError
        If the logical path would escape the namespace prefix.
    """
    pure = PurePosixPath(relative)
    if pure.is_absolute() or ".." in pure.parts or not pure.parts:
        raise SafetyViolationError(f"Unsafe logical path for remote object: {relative!r}")
    return f"{validate_namespace(namespace)}/{pure.as_posix()}"


def printable(text: str) -> str:
    """
    Return ``text`` safe to write to a UTF-8 terminal or log.

    File names that are not valid UTF-8 reach Python as lone surrogates. They
    are shown as ``\\udcXX`` escapes; everything else is unchanged.
    """
    return text.encode("utf-8", "backslashreplace").decode("utf-8")

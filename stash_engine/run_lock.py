"""
Namespace run locking.

Only one backup run may operate on a (metadata store, namespace) pair at a
time. Besides protecting the store from two walkers racing over the same tree,
the lock is what makes upload claims safe: while a run holds the lock, any
claim recorded by a different run id is known to be stale and may be taken
over.

Design
------
- Locks are plain JSON files created with exclusive-create semantics.
- An existing lock blocks unless explicitly overridden.
- A lock is provably stale only when it was written on this host and the
  recorded PID is known not to be running.
"""

from __future__ import annotations

import errno
import json
import os
import platform
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Mapping

from stash_engine.clock import Clock, SystemClock
from stash_engine.errors import RunLockError

LOCK_SCHEMA_VERSION = "coldstash_run_lock_v1"


@dataclass(frozen=True, slots=True)
class RunLockInfo:
    """
    Metadata recorded in a run lock file.

    Attributes
    ----------
    schema_version:
        Schema identifier for the lock JSON.
    namespace:
        Backup name the lock applies to.
    created_at_utc:
        Acquisition time (ISO 8601).
    hostname:
        Host that created the lock.
    pid:
        Process ID of the creating process.
    run_id:
        Run holding the lock.
    """

    schema_version: str
    namespace: str
    created_at_utc: str
    hostname: str
    pid: int
    run_id: str


@contextmanager
def acquire_run_lock(
    *,
    lock_path: Path,
    namespace: str,
    run_id: str,
    force: bool = False,
    break_lock: bool = False,
    clock: Clock | None = None,
) -> Iterator[RunLockInfo]:
    """
    Hold the run lock for a namespace for the duration of the context.

    Parameters
    ----------
    lock_path:
        Lock file to create.
    namespace:
        Backup name, recorded for inspection.
    run_id:
        Identifier of the run taking the lock.
    force:
        Break the lock only when it is provably stale.
    break_lock:
        Break any existing lock.
    clock:
        Time source for the recorded acquisition time.

    Raises
    ------
    RunLockError
        If the lock is held and cannot be broken under the given flags, or if
        it cannot be written or released.
    """
    lock_path = lock_path.expanduser()
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    info = _build_lock_info(namespace=namespace, run_id=run_id, clock=clock or SystemClock())

    try:
        _write_lock_exclusive(lock_path, info)
    except FileExistsError:
        existing = _try_read_lock(lock_path)
        allow, message = _evaluate_existing_lock(existing=existing, force=force, break_lock=break_lock)
        if not allow:
            raise RunLockError(message)
        try:
            lock_path.unlink(missing_ok=True)
            _write_lock_exclusive(lock_path, info)
        except FileExistsError as exc:
            raise RunLockError(f"Lock was taken by another process while breaking it: {lock_path}") from exc
        except OSError as exc:
            raise RunLockError(f"Failed to replace existing lock: {lock_path} ({exc})") from exc
    except OSError as exc:
        raise RunLockError(f"Failed to create lock: {lock_path} ({exc})") from exc

    try:
        yield info
    finally:
        _release_lock(lock_path, info)


def _build_lock_info(*, namespace: str, run_id: str, clock: Clock) -> RunLockInfo:
    created = clock.now().replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return RunLockInfo(
        schema_version=LOCK_SCHEMA_VERSION,
        namespace=namespace,
        created_at_utc=created,
        hostname=platform.node(),
        pid=os.getpid(),
        run_id=run_id,
    )


def _write_lock_exclusive(lock_path: Path, info: RunLockInfo) -> None:
    payload = json.dumps(asdict(info), sort_keys=True) + "\n"
    with lock_path.open("x", encoding="utf-8", newline="\n") as handle:
        handle.write(payload)


def _release_lock(lock_path: Path, info: RunLockInfo) -> None:
    """Remove the lock if it still names this run."""
    try:
        existing = _try_read_lock(lock_path)
        if existing is not None and existing.get("run_id") != info.run_id:
            return
        lock_path.unlink(missing_ok=True)
    except OSError as exc:
        raise RunLockError(f"Failed to release lock: {lock_path} ({exc})") from exc


def _try_read_lock(lock_path: Path) -> Mapping[str, object] | None:
    try:
        data = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return data if isinstance(data, dict) else None


def _evaluate_existing_lock(
    *,
    existing: Mapping[str, object] | None,
    force: bool,
    break_lock: bool,
) -> tuple[bool, str]:
    if break_lock:
        return True, "Breaking lock due to --break-lock."
    if existing is None:
        return (
            False,
            "Lock exists but could not be read. Inspect the lock file and re-run with --break-lock if necessary.",
        )

    details = _format_lock_details(existing)
    if _is_provably_stale(existing):
        if force:
            return True, "Breaking provably stale lock due to --force."
        return False, "Lock appears to be stale. Re-run with --force to break it.\n" + details
    return False, "Lock is held and is not provably stale. Re-run with --break-lock to override.\n" + details


def _format_lock_details(existing: Mapping[str, object]) -> str:
    fields = ("namespace", "run_id", "created_at_utc", "hostname", "pid")
    parts = [f"{name}={existing.get(name)!r}" for name in fields if name in existing]
    return "Lock details: " + ", ".join(parts) if parts else ""


def _is_provably_stale(existing: Mapping[str, object]) -> bool:
    host = existing.get("hostname")
    pid = existing.get("pid")
    if not isinstance(host, str) or not isinstance(pid, int):
        return False
    if host.lower() != platform.node().lower():
        return False
    return is_pid_running(pid) is False


def is_pid_running(pid: int) -> bool | None:
    """
    Determine whether a process is running on this host.

    Returns
    -------
    bool | None
        True if running, False if not, None if it cannot be determined.
    """
    if pid <= 0:
        return None
    if os.name == "nt":
        return _is_pid_running_windows(pid)
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        if exc.errno == errno.ESRCH:
            return False
        return None
    return True


def _is_pid_running_windows(pid: int) -> bool | None:
    import ctypes
    from ctypes import wintypes

    process_query_limited_information = 0x1000
    still_active = 259

    kernel32 = ctypes.WinDLL("kernel32", use_last_error=True)
    kernel32.OpenProcess.argtypes = [wintypes.DWORD, wintypes.BOOL, wintypes.DWORD]
    kernel32.OpenProcess.restype = wintypes.HANDLE
    kernel32.GetExitCodeProcess.argtypes = [wintypes.HANDLE, ctypes.POINTER(wintypes.DWORD)]
    kernel32.GetExitCodeProcess.restype = wintypes.BOOL

    handle = kernel32.OpenProcess(process_query_limited_information, False, pid)
    if not handle:
        # Not running, or access denied.
        return None
    try:
        exit_code = wintypes.DWORD()
        if not kernel32.GetExitCodeProcess(handle, ctypes.byref(exit_code)):
            return None
        return exit_code.value == still_active
    finally:
        kernel32.CloseHandle(handle)

"""
Command-line interface for coldstash.

Notes
-----
The CLI is intentionally thin. It parses arguments into BackupSettings and
delegates to engine modules.

Exit codes
----------
- 0: the run finished (per-file failures are listed in the summary).
- 1: the walk was aborted by an unreadable directory.
- 2: configuration, lock, store, remote, snapshot or run journal errors.
"""

from __future__ import annotations

import argparse
from pathlib import Path

from stash_engine.backup.scan import (
    DEFAULT_SKIP_DIRECTORY_NAMES,
    DEFAULT_SKIP_FILE_SUFFIXES,
    parse_name_list,
)
from stash_engine.backup.service import list_entries, run_backup
from stash_engine.errors import StashError, TraversalError
from stash_engine.fingerprint import DEFAULT_SAMPLE_BYTES
from stash_engine.paths_and_safety import printable
from stash_engine.settings import DEFAULT_WORKERS, BackupSettings, RemoteBackend


def build_parser() -> argparse.ArgumentParser:
    """
    Build and return the top-level argument parser.

    Returns
    -------
    argparse.ArgumentParser
        Configured parser.
    """
    parser = argparse.ArgumentParser(
        prog="coldstash",
        description="Deduplicating backup of a directory tree to cold object storage",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    backup_p = sub.add_parser(
        "backup",
        help="Back up a directory, uploading each distinct content once",
    )
    backup_p.add_argument("--db", required=True, type=Path, help="Path to the metadata database")
    backup_p.add_argument("--name", required=True, help="Name of the backup (metadata namespace and remote prefix)")
    backup_p.add_argument("--dir", required=True, type=Path, help="Directory to back up")
    backup_p.add_argument(
        "--threads",
        type=int,
        default=DEFAULT_WORKERS,
        help=f"Number of worker threads (default: {DEFAULT_WORKERS}).",
    )
    backup_p.add_argument(
        "--backend",
        choices=[b.value for b in RemoteBackend],
        default=RemoteBackend.S3.value,
        help="Remote store backend (default: s3).",
    )
    backup_p.add_argument("--project", default=None, help="AWS profile to use (s3 backend)")
    backup_p.add_argument("--bucket", default=None, help="Name of the bucket (s3 backend)")
    backup_p.add_argument("--region", default=None, help="Bucket region, used when creating it (s3 backend)")
    backup_p.add_argument("--endpoint-url", default=None, help="Custom S3 endpoint (s3 backend)")
    backup_p.add_argument(
        "--storage-class",
        default=None,
        help="Storage class for uploaded objects, e.g. DEEP_ARCHIVE (s3 backend)",
    )
    backup_p.add_argument(
        "--remote-root",
        type=Path,
        default=None,
        help="Destination directory (local backend)",
    )
    backup_p.add_argument(
        "--skip-dir",
        default=",".join(sorted(DEFAULT_SKIP_DIRECTORY_NAMES)),
        help="Comma-separated directory names to skip. Pass an empty string to skip none.",
    )
    backup_p.add_argument(
        "--skip-file",
        default=",".join(DEFAULT_SKIP_FILE_SUFFIXES),
        help="Comma-separated file name suffixes to skip. Pass an empty string to skip none.",
    )
    backup_p.add_argument(
        "--sample-bytes",
        type=int,
        default=DEFAULT_SAMPLE_BYTES,
        help=f"Fingerprint sample size in bytes (default: {DEFAULT_SAMPLE_BYTES}).",
    )
    backup_p.add_argument(
        "--snapshot-store",
        action="store_true",
        help="Upload a compressed copy of the metadata database after the run.",
    )
    backup_p.add_argument(
        "--max-items",
        type=int,
        default=100,
        help="Maximum number of failures and missing files to list in the summary (default: 100).",
    )
    backup_p.add_argument(
        "--force",
        action="store_true",
        help="Break an existing run lock only if it is provably stale.",
    )
    backup_p.add_argument(
        "--break-lock",
        action="store_true",
        help="Break an existing run lock unconditionally. Only use if no other run is active.",
    )

    entries_p = sub.add_parser("entries", help="List the stored entries of a backup")
    entries_p.add_argument("--db", required=True, type=Path, help="Path to the metadata database")
    entries_p.add_argument("--name", required=True, help="Name of the backup")
    entries_p.add_argument(
        "--incomplete",
        action="store_true",
        help="Only list entries whose upload never completed.",
    )

    return parser


def _settings_from_args(args: argparse.Namespace) -> BackupSettings:
    return BackupSettings(
        db_path=args.db,
        namespace=args.name,
        source=args.dir,
        workers=args.threads,
        backend=RemoteBackend(args.backend),
        bucket=args.bucket,
        project=args.project,
        region=args.region,
        endpoint_url=args.endpoint_url,
        storage_class=args.storage_class,
        remote_root=args.remote_root,
        skip_directory_names=parse_name_list(args.skip_dir),
        skip_file_suffixes=parse_name_list(args.skip_file),
        sample_bytes=args.sample_bytes,
        snapshot_store=args.snapshot_store,
        force=args.force,
        break_lock=args.break_lock,
    )


def _print_entries(db_path: Path, namespace: str, *, incomplete_only: bool) -> None:
    entries, corrupt = list_entries(db_path, namespace, incomplete_only=incomplete_only)
    for entry in entries:
        state = "complete" if entry.is_complete else "incomplete"
        print(printable(f"{entry.entry_id}\t{entry.key.hex()}\t{state}\t{entry.path}\t{entry.cloud}"))
    for bad in corrupt:
        print(f"CORRUPT\t{bad.key_hex}\t{bad.message}")
    print(f"entries: {len(entries)}")


def main(argv: list[str] | None = None) -> int:
    """
    CLI entry point.

    Parameters
    ----------
    argv:
        Optional argument vector. If None, argparse uses sys.argv.

    Returns
    -------
    int
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "backup":
        try:
            run_backup(_settings_from_args(args), max_items=args.max_items)
        except TraversalError as exc:
            print(f"ERROR: {printable(str(exc))}")
            return 1
        except (StashError, ValueError) as exc:
            print(f"ERROR: {printable(str(exc))}")
            return 2
        except OSError as exc:
            print(f"ERROR: Cannot write run state: {printable(str(exc))}")
            return 2
        return 0

    if args.command == "entries":
        try:
            _print_entries(args.db, args.name, incomplete_only=args.incomplete)
        except StashError as exc:
            print(f"ERROR: {printable(str(exc))}")
            return 2
        return 0

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

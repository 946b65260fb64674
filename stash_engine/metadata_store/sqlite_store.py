"""
SQLite implementation of MetadataStore.

This module owns the on-disk persistence format for content entries.

Threading
---------
sqlite3 connections are never shared across threads: every operation opens its
own connection and closes it when done. Writes are serialized twice over: by a
process-level lock and by ``BEGIN IMMEDIATE``, which takes SQLite's database
write lock up front so a check-and-create cannot interleave with another
writer. Reads run in deferred transactions and, under WAL, see a consistent
snapshot while writers proceed.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import closing, contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Final

from stash_engine.fingerprint import ContentKey
from stash_engine.metadata_store.api import (
    AddResult,
    AddStatus,
    CorruptEntry,
    Entry,
    EntryMutator,
    MetadataStore,
)
from stash_engine.metadata_store.codec import decode_entry, encode_entry
from stash_engine.metadata_store.errors import (
    EntryDecodeError,
    EntryInvariantError,
    MetadataStoreError,
    StoreOpenError,
    UnknownEntryError,
)
from stash_engine.metadata_store.schema import SCHEMA_V1, SCHEMA_VERSION
from stash_engine.paths_and_safety import validate_namespace

DEFAULT_BUSY_TIMEOUT_SECONDS: Final[float] = 30.0


def _ensure_schema(conn: sqlite3.Connection) -> None:
    """
    Record the schema version on first open and refuse unknown versions.

    Notes
    -----
    The entry layout is the only durable state; opening a store written by a
    different layout must fail instead of silently misreading it.
    """
    row = conn.execute("SELECT value FROM store_meta WHERE key = 'schema_version'").fetchone()
    if row is None:
        conn.execute(
            "INSERT INTO store_meta(key, value) VALUES('schema_version', ?)",
            (SCHEMA_VERSION,),
        )
        return
    if str(row["value"]) != SCHEMA_VERSION:
        raise StoreOpenError(
            f"Unsupported metadata store schema version {row['value']!r} (expected {SCHEMA_VERSION})."
        )


@dataclass(frozen=True, slots=True)
class SqliteMetadataStore(MetadataStore):
    """
    SQLite-backed MetadataStore for one namespace.

    Parameters
    ----------
    db_path:
        Path to the SQLite database. Created if absent, along with its parent.
    namespace:
        Backup name. Each namespace has its own entries and id sequence.
    busy_timeout_seconds:
        How long a connection waits for a lock held by another process.
    """

    db_path: Path
    namespace: str
    busy_timeout_seconds: float = DEFAULT_BUSY_TIMEOUT_SECONDS
    _write_lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        validate_namespace(self.namespace)
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with closing(self._connect()) as conn:
                conn.executescript(SCHEMA_V1)
                conn.execute("BEGIN IMMEDIATE")
                try:
                    _ensure_schema(conn)
                    conn.execute(
                        "INSERT OR IGNORE INTO sequences(namespace, value) VALUES(?, 0)",
                        (self.namespace,),
                    )
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
        except (OSError, sqlite3.Error) as exc:
            raise StoreOpenError(f"Cannot open metadata store '{self.db_path}': {exc!s}") from exc

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout_seconds,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _write_transaction(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            try:
                conn = self._connect()
            except sqlite3.Error as exc:
                raise MetadataStoreError(f"Cannot connect to metadata store: {exc!s}") from exc
            with closing(conn):
                try:
                    conn.execute("BEGIN IMMEDIATE")
                    yield conn
                    conn.execute("COMMIT")
                except sqlite3.Error as exc:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise MetadataStoreError(f"Metadata store write failed: {exc!s}") from exc
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise

    @contextmanager
    def _read_transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise MetadataStoreError(f"Cannot connect to metadata store: {exc!s}") from exc
        with closing(conn):
            try:
                conn.execute("BEGIN")
                yield conn
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise MetadataStoreError(f"Metadata store read failed: {exc!s}") from exc
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    def _load(self, conn: sqlite3.Connection, key: ContentKey) -> Entry | None:
        row = conn.execute(
            "SELECT value FROM entries WHERE namespace = ? AND key = ?",
            (self.namespace, key.to_bytes()),
        ).fetchone()
        if row is None:
            return None
        try:
            entry = decode_entry(row["value"])
        except EntryDecodeError as exc:
            raise EntryDecodeError(f"Cannot decode entry with key {key.hex()}: {exc!s}") from exc
        if entry.key != key:
            raise EntryDecodeError(f"Entry stored under key {key.hex()} describes key {entry.key.hex()}.")
        return entry

    def _put(self, conn: sqlite3.Connection, entry: Entry) -> None:
        conn.execute(
            "INSERT INTO entries(namespace, key, value) VALUES(?, ?, ?) "
            "ON CONFLICT(namespace, key) DO UPDATE SET value = excluded.value",
            (self.namespace, entry.key.to_bytes(), encode_entry(entry)),
        )

    def _next_sequence(self, conn: sqlite3.Connection) -> int:
        conn.execute(
            "INSERT INTO sequences(namespace, value) VALUES(?, 1) "
            "ON CONFLICT(namespace) DO UPDATE SET value = value + 1",
            (self.namespace,),
        )
        row = conn.execute(
            "SELECT value FROM sequences WHERE namespace = ?", (self.namespace,)
        ).fetchone()
        return int(row["value"])

    def add_if_absent(self, path: str, size: int, digest: bytes, claim: str) -> AddResult:
        """See MetadataStore.add_if_absent."""
        key = ContentKey(size=size, digest=digest)
        with self._write_transaction() as conn:
            entry = self._load(conn, key)
            if entry is None:
                entry_id = self._next_sequence(conn)
                self._put(
                    conn,
                    Entry(
                        entry_id=entry_id,
                        path=path,
                        cloud="",
                        size=size,
                        digest=digest,
                        checksum="",
                        upload_claim=claim,
                    ),
                )
                return AddResult(status=AddStatus.NEW, entry_id=entry_id, stored_path=path)

            if entry.is_complete:
                status = AddStatus.COMPLETE
            elif claim and entry.upload_claim == claim:
                status = AddStatus.IN_PROGRESS
            else:
                # Unclaimed, or claimed by a run that no longer holds the namespace lock.
                self._put(conn, replace(entry, upload_claim=claim))
                status = AddStatus.RESUMED
            return AddResult(status=status, entry_id=entry.entry_id, stored_path=entry.path)

    def update_by_key(self, size: int, digest: bytes, mutator: EntryMutator) -> Entry:
        """See MetadataStore.update_by_key."""
        key = ContentKey(size=size, digest=digest)
        with self._write_transaction() as conn:
            before = self._load(conn, key)
            if before is None:
                raise UnknownEntryError(f"Cannot find entry with key {key.hex()}")
            after = mutator(before)
            _check_mutation(before, after)
            self._put(conn, after)
            return after

    def release_claim(self, size: int, digest: bytes, claim: str) -> bool:
        """See MetadataStore.release_claim."""
        key = ContentKey(size=size, digest=digest)
        with self._write_transaction() as conn:
            entry = self._load(conn, key)
            if entry is None or not claim or entry.upload_claim != claim:
                return False
            self._put(conn, replace(entry, upload_claim=""))
            return True

    def get(self, size: int, digest: bytes) -> Entry | None:
        """See MetadataStore.get."""
        with self._read_transaction() as conn:
            return self._load(conn, ContentKey(size=size, digest=digest))

    def for_each_entry(
        self,
        visit: Callable[[Entry], None],
        *,
        on_corrupt: Callable[[CorruptEntry], None] | None = None,
    ) -> int:
        """
        Visit every entry in key order within a single read snapshot.

        Values that fail to decode are passed to ``on_corrupt`` (when given)
        and iteration continues.
        """
        visited = 0
        with self._read_transaction() as conn:
            cursor = conn.execute(
                "SELECT key, value FROM entries WHERE namespace = ? ORDER BY key ASC",
                (self.namespace,),
            )
            for row in cursor:
                try:
                    entry = decode_entry(row["value"])
                except EntryDecodeError as exc:
                    if on_corrupt is not None:
                        on_corrupt(CorruptEntry(key_hex=bytes(row["key"]).hex().upper(), message=str(exc)))
                    continue
                visit(entry)
                visited += 1
        return visited

    def iter_entries(self) -> Iterator[Entry]:
        """See MetadataStore.iter_entries."""
        entries: list[Entry] = []
        self.for_each_entry(entries.append)
        return iter(entries)

    def count(self) -> int:
        """See MetadataStore.count."""
        with self._read_transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM entries WHERE namespace = ?", (self.namespace,)
            ).fetchone()
        return int(row["n"])

    def snapshot_to(self, destination: Path) -> Path:
        """
        Write a consistent copy of the whole database to ``destination``.

        Uses the SQLite online backup API, so concurrent readers and writers are
        not blocked for the duration of the copy.

        Raises
        ------
        MetadataStoreError
            If the destination exists or the copy fails.
        """
        if destination.exists():
            raise MetadataStoreError(f"Snapshot destination already exists: {destination}")
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            with closing(self._connect()) as source, closing(sqlite3.connect(destination)) as target:
                source.backup(target)
        except sqlite3.Error as exc:
            raise MetadataStoreError(f"Cannot snapshot metadata store to {destination}: {exc!s}") from exc
        return destination


def _check_mutation(before: Entry, after: Entry) -> None:
    """
    Enforce which fields a mutator may change.

    Raises
    ------
    EntryInvariantError
        If id, size or digest changed, or if a recorded cloud path or checksum
        was replaced by a different value.
    """
    for name in ("entry_id", "size", "digest"):
        if getattr(before, name) != getattr(after, name):
            raise EntryInvariantError(f"Entry field {name!r} is immutable (key {before.key.hex()}).")
    if before.cloud and after.cloud != before.cloud:
        raise EntryInvariantError(f"Entry cloud path is already set (key {before.key.hex()}).")
    if before.checksum and after.checksum != before.checksum:
        raise EntryInvariantError(f"Entry checksum is already set (key {before.key.hex()}).")


def open_metadata_store(db_path: Path, namespace: str) -> SqliteMetadataStore:
    """
    Convenience constructor that expands ``~`` in the database path.

    Raises
    ------
    StoreOpenError
        If the database cannot be opened or has an unsupported schema.
    SafetyViolationError
        If the namespace is not a simple name.
    """
    return SqliteMetadataStore(db_path=Path(db_path).expanduser(), namespace=namespace)

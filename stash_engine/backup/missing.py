"""
End-of-run reconciliation.

After every worker has exited, each stored entry whose id was not touched in
this run is reported as missing: likely deleted, or moved outside the tracked
root, since a previous run. The report is advisory and read-only. Entries are
never deleted or modified here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from stash_engine.backup.touched import TouchedSet
from stash_engine.metadata_store.api import CorruptEntry, Entry, EntryId, MetadataStore


@dataclass(frozen=True, slots=True)
class MissingEntry:
    """A stored entry not observed during the run."""

    entry_id: EntryId
    path: str
    key_hex: str
    complete: bool

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable payload."""
        return {
            "entry_id": self.entry_id,
            "path": self.path,
            "key": self.key_hex,
            "complete": self.complete,
        }


@dataclass(frozen=True, slots=True)
class MissingReport:
    """
    Result of the reconciliation scan.

    Attributes
    ----------
    missing:
        Untouched entries, in store key order.
    corrupt:
        Stored values that could not be decoded.
    scanned:
        Number of decodable entries scanned.
    """

    missing: list[MissingEntry]
    corrupt: list[CorruptEntry]
    scanned: int


def find_missing(store: MetadataStore, touched: TouchedSet) -> MissingReport:
    """
    Compare every stored entry against the ids touched in this run.

    Parameters
    ----------
    store:
        Metadata store for the run's namespace.
    touched:
        Ids observed in the run. Must be final (all workers exited).

    Returns
    -------
    MissingReport
        Each untouched entry appears exactly once.
    """
    seen = touched.snapshot()
    missing: list[MissingEntry] = []
    corrupt: list[CorruptEntry] = []

    def _visit(entry: Entry) -> None:
        if entry.entry_id not in seen:
            missing.append(
                MissingEntry(
                    entry_id=entry.entry_id,
                    path=entry.path,
                    key_hex=entry.key.hex(),
                    complete=entry.is_complete,
                )
            )

    scanned = store.for_each_entry(_visit, on_corrupt=corrupt.append)
    return MissingReport(missing=missing, corrupt=corrupt, scanned=scanned)

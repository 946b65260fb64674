"""Per-run record of which entry ids were observed."""

from __future__ import annotations

import threading
from collections.abc import Iterable

from stash_engine.metadata_store.api import EntryId


class TouchedSet:
    """
    Thread-safe set of entry ids seen during the current run.

    Created empty at run start, filled by workers, consulted by the
    missing-file report, then discarded. Never persisted.
    """

    def __init__(self, initial: Iterable[EntryId] = ()) -> None:
        self._lock = threading.Lock()
        self._ids: set[EntryId] = set(initial)

    def mark(self, entry_id: EntryId) -> bool:
        """
        Record ``entry_id`` as seen.

        Returns
        -------
        bool
            True if the id had already been seen in this run.
        """
        with self._lock:
            if entry_id in self._ids:
                return True
            self._ids.add(entry_id)
            return False

    def __contains__(self, entry_id: object) -> bool:
        with self._lock:
            return entry_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def snapshot(self) -> frozenset[EntryId]:
        """Return an immutable copy of the ids seen so far."""
        with self._lock:
            return frozenset(self._ids)

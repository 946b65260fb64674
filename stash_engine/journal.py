from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Mapping

from stash_engine.clock import Clock


class RunJournal:
    """
    Append-only JSONL journal of one backup run.

    Notes
    -----
    - Each call to ``append()`` writes one JSON object per line.
    - Appends are serialized by a lock because worker threads record file
      outcomes as they complete.
    - Records are ASCII-only JSON, so undecodable file names are kept as
      ``\\udcXX`` escapes instead of failing the write.
    - The journal is an inspectable artifact for audit and debugging; the
      metadata store remains the only state the engine reads back.
    """

    def __init__(self, journal_path: Path, *, clock: Clock) -> None:
        self._journal_path = journal_path
        self._clock = clock
        self._lock = threading.Lock()
        self._journal_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        """Return the on-disk path to the journal file."""
        return self._journal_path

    def append(self, event: str, data: Mapping[str, Any]) -> None:
        """
        Append one event record.

        Parameters
        ----------
        event : str
            Stable event identifier (e.g. 'run_started', 'file_outcome').
        data : Mapping[str, Any]
            JSON-serializable payload.

        Raises
        ------
        OSError
            If the journal cannot be written.
        TypeError
            If ``data`` is not JSON-serializable.
        """
        line = json.dumps(
            {"ts": self._clock.now().isoformat(), "event": event, "data": data},
            ensure_ascii=True,
            sort_keys=True,
            separators=(",", ":"),
        )
        with self._lock:
            with self._journal_path.open("a", encoding="utf-8", newline="\n") as handle:
                handle.write(line + "\n")
                handle.flush()

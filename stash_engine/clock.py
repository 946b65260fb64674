"""
Clock abstractions and run identifiers.

Engine code does not read wall-clock time directly. Callers provide a Clock so
that run identifiers and journal timestamps are reproducible in tests.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

RUN_ID_TIME_FORMAT = "%Y%m%d_%H%M%SZ"


class Clock(Protocol):
    """A source of timezone-aware time."""

    def now(self) -> datetime:
        """Return the current time as a timezone-aware datetime."""
        ...


@dataclass(frozen=True, slots=True)
class SystemClock:
    """Clock backed by the system time, in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class FixedClock:
    """Clock pinned to one instant. Naive datetimes are interpreted as UTC."""

    fixed_time: datetime

    def now(self) -> datetime:
        if self.fixed_time.tzinfo is None:
            return self.fixed_time.replace(tzinfo=timezone.utc)
        return self.fixed_time


def new_run_id(clock: Clock) -> str:
    """
    Build a run identifier from the clock plus a short random suffix.

    The identifier doubles as the upload claim token written into incomplete
    entries, so two runs must never share one even within the same second.

    Parameters
    ----------
    clock:
        Time source.

    Returns
    -------
    str
        Identifier such as ``20250101_000000Z-1a2b3c4d``.
    """
    stamp = clock.now().astimezone(timezone.utc).strftime(RUN_ID_TIME_FORMAT)
    return f"{stamp}-{uuid.uuid4().hex[:8]}"

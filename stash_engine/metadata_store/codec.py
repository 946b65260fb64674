"""
Serialization of Entry records.

An entry value is compact, key-sorted, ASCII-only JSON. The digest is stored as
uppercase hex. Non-ASCII characters are written as \\u escapes, so a file name
that is not valid UTF-8 (surrogate-escaped by ``os``) is stored losslessly.
The layout is part of the on-disk format and must stay stable across runs.
"""

from __future__ import annotations

import json
from typing import Any, Final, Mapping

from stash_engine.fingerprint import DIGEST_SIZE
from stash_engine.metadata_store.api import Entry
from stash_engine.metadata_store.errors import EntryDecodeError

ENTRY_FORMAT_VERSION: Final[int] = 1

_STR_FIELDS: Final[tuple[str, ...]] = ("path", "cloud", "checksum", "claim")
_INT_FIELDS: Final[tuple[str, ...]] = ("id", "size")


def encode_entry(entry: Entry) -> bytes:
    """Serialize an entry to its stored value."""
    payload = {
        "v": ENTRY_FORMAT_VERSION,
        "id": entry.entry_id,
        "path": entry.path,
        "cloud": entry.cloud,
        "size": entry.size,
        "hash": entry.digest.hex().upper(),
        "checksum": entry.checksum,
        "claim": entry.upload_claim,
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode("ascii")


def decode_entry(raw: bytes) -> Entry:
    """
    Deserialize a stored value.

    Raises
    ------
    EntryDecodeError
        If the value is not valid JSON, has an unknown format version, or has
        missing or mistyped fields.
    """
    try:
        payload = json.loads(bytes(raw).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise EntryDecodeError(f"Entry value is not valid JSON: {exc!s}") from exc

    if not isinstance(payload, dict):
        raise EntryDecodeError("Entry value must be a JSON object.")
    if payload.get("v") != ENTRY_FORMAT_VERSION:
        raise EntryDecodeError(f"Unsupported entry format version: {payload.get('v')!r}")

    _require_types(payload)

    try:
        digest = bytes.fromhex(payload["hash"])
    except ValueError as exc:
        raise EntryDecodeError(f"Entry hash is not hex: {payload['hash']!r}") from exc
    if len(digest) != DIGEST_SIZE:
        raise EntryDecodeError(f"Entry hash must be {DIGEST_SIZE} bytes, got {len(digest)}.")

    return Entry(
        entry_id=payload["id"],
        path=payload["path"],
        cloud=payload["cloud"],
        size=payload["size"],
        digest=digest,
        checksum=payload["checksum"],
        upload_claim=payload["claim"],
    )


def _require_types(payload: Mapping[str, Any]) -> None:
    for name in _INT_FIELDS:
        value = payload.get(name)
        # bool is an int subclass; reject it explicitly.
        if not isinstance(value, int) or isinstance(value, bool):
            raise EntryDecodeError(f"Entry field {name!r} must be an integer.")
    for name in _STR_FIELDS + ("hash",):
        if not isinstance(payload.get(name), str):
            raise EntryDecodeError(f"Entry field {name!r} must be a string.")

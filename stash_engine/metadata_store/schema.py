"""SQLite schema for the metadata store.

Notes
-----
Keys are the 40-byte ContentKey encoding. ``WITHOUT ROWID`` keeps rows
clustered by (namespace, key), so iteration in key order is a table scan.
"""

from __future__ import annotations

SCHEMA_VERSION = "1"

SCHEMA_V1 = """
PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS store_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sequences (
    namespace TEXT PRIMARY KEY,
    value     INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS entries (
    namespace TEXT NOT NULL,
    key       BLOB NOT NULL CHECK(length(key) = 40),
    value     BLOB NOT NULL,
    PRIMARY KEY (namespace, key)
) WITHOUT ROWID;
"""

"""SQLite schema for the metrics database and its migrations."""
from __future__ import annotations

import logging
import sqlite3
from typing import Dict, List, Optional

from ..errors import StoreCorruption

LOGGER = logging.getLogger(__name__)

SCHEMA_VERSION = 3

# Running totals over the batches table, kept in meta by every write.
SAMPLE_TOTAL_KEY = "sample_total"
BYTE_TOTAL_KEY = "byte_total"

CREATE_STATEMENTS: List[str] = [
    "CREATE TABLE meta (key TEXT PRIMARY KEY, value TEXT NOT NULL)",
    """
    CREATE TABLE batches (
        batch_id INTEGER PRIMARY KEY AUTOINCREMENT,
        created_at REAL NOT NULL,
        first_ts REAL NOT NULL,
        last_ts REAL NOT NULL,
        sample_count INTEGER NOT NULL,
        byte_size INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE samples (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        batch_id INTEGER NOT NULL REFERENCES batches(batch_id) ON DELETE CASCADE,
        kind TEXT NOT NULL,
        wall_ts REAL NOT NULL,
        mono_ts REAL NOT NULL,
        value NUMERIC,
        source TEXT,
        sealed BLOB,
        scheme TEXT
    )
    """,
    "CREATE INDEX idx_samples_kind_ts ON samples (kind, wall_ts, seq)",
    "CREATE INDEX idx_samples_ts ON samples (wall_ts, seq)",
    "CREATE INDEX idx_samples_batch ON samples (batch_id)",
    "CREATE INDEX idx_batches_age ON batches (first_ts, batch_id)",
]

# Statements that lift a database from the keyed version to the next one.
MIGRATIONS: Dict[int, List[str]] = {
    1: [
        "ALTER TABLE samples ADD COLUMN sealed BLOB",
        "ALTER TABLE samples ADD COLUMN scheme TEXT",
        "CREATE INDEX IF NOT EXISTS idx_samples_ts ON samples (wall_ts, seq)",
    ],
    2: [
        "INSERT OR REPLACE INTO meta (key, value) "
        "SELECT 'sample_total', CAST(COALESCE(SUM(sample_count), 0) AS TEXT) FROM batches",
        "INSERT OR REPLACE INTO meta (key, value) "
        "SELECT 'byte_total', CAST(COALESCE(SUM(byte_size), 0) AS TEXT) FROM batches",
    ],
}


def read_version(conn: sqlite3.Connection) -> Optional[int]:
    """Return the stored schema version, or None for an empty database."""
    tables = {
        row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    }
    tables.discard("sqlite_sequence")
    if not tables:
        return None
    if "meta" not in tables:
        raise StoreCorruption("Database has tables but no schema version marker")
    row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
    if row is None:
        raise StoreCorruption("Schema version marker is missing")
    try:
        return int(row[0])
    except (TypeError, ValueError) as exc:
        raise StoreCorruption(f"Schema version marker is not a number: {row[0]!r}") from exc


def initialize(conn: sqlite3.Connection) -> int:
    """Create the schema on a fresh database or upgrade an older one.

    Raises:
        StoreCorruption: the version marker is missing, unreadable, newer than
            this build understands, or has no migration path.
    """
    version = read_version(conn)
    if version is None:
        conn.execute("BEGIN IMMEDIATE")
        try:
            for statement in CREATE_STATEMENTS:
                conn.execute(statement)
            conn.executemany(
                "INSERT INTO meta (key, value) VALUES (?, ?)",
                [
                    ("schema_version", str(SCHEMA_VERSION)),
                    (SAMPLE_TOTAL_KEY, "0"),
                    (BYTE_TOTAL_KEY, "0"),
                ],
            )
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise
        LOGGER.info("Created metrics schema version %d", SCHEMA_VERSION)
        return SCHEMA_VERSION

    if version > SCHEMA_VERSION:
        raise StoreCorruption(
            f"Database schema version {version} is newer than supported version {SCHEMA_VERSION}"
        )

    while version < SCHEMA_VERSION:
        statements = MIGRATIONS.get(version)
        if statements is None:
            raise StoreCorruption(f"No migration available from schema version {version}")
        conn.execute("BEGIN IMMEDIATE")
        try:
            for statement in statements:
                conn.execute(statement)
            conn.execute(
                "UPDATE meta SET value = ? WHERE key = 'schema_version'", (str(version + 1),)
            )
            conn.execute("COMMIT")
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise
        LOGGER.info("Migrated metrics schema from version %d to %d", version, version + 1)
        version += 1
    return version

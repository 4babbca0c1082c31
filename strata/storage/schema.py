"""Database schema for the SQLite partition store.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Database initialization (init_db)
"""

import logging
import os
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 3  # write journal for batch rollback

# Allowed table names for SQL built with a table name (prevents injection via names)
ALLOWED_TABLES = frozenset(
    {
        "schema_version",
        "partition_records",
        "source_author_index",
        "subject_relevance_index",
        "correction_anchors",
        "write_journal",
    }
)

# Primary key column per journaled table
TABLE_KEYS = {
    "partition_records": "message_id",
    "source_author_index": "message_id",
    "subject_relevance_index": "message_id",
}


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Routed messages; one row per message, partitions are disjoint
CREATE TABLE IF NOT EXISTS partition_records (
    message_id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    partition TEXT NOT NULL CHECK (partition IN ('primary', 'sandbox', 'quarantine')),
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    confidence INTEGER NOT NULL,
    drift_score REAL NOT NULL,
    profile TEXT NOT NULL DEFAULT '{}',
    batch_key TEXT,
    committed_at TEXT NOT NULL,
    override_reason TEXT
);
CREATE INDEX IF NOT EXISTS idx_partition_records_partition ON partition_records(partition);
CREATE INDEX IF NOT EXISTS idx_partition_records_thread ON partition_records(thread_id);
CREATE INDEX IF NOT EXISTS idx_partition_records_batch ON partition_records(batch_key);

-- Trustworthy user-authored messages
CREATE TABLE IF NOT EXISTS source_author_index (
    message_id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    content TEXT NOT NULL,
    confidence INTEGER NOT NULL,
    batch_key TEXT,
    indexed_at TEXT NOT NULL
);

-- Messages matching the relevance keyword set
CREATE TABLE IF NOT EXISTS subject_relevance_index (
    message_id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    keywords TEXT NOT NULL DEFAULT '[]',
    relevance_score INTEGER NOT NULL DEFAULT 0,
    batch_key TEXT,
    indexed_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_subject_relevance_score ON subject_relevance_index(relevance_score);

-- Correction anchors: append-only, confidence never lowered
CREATE TABLE IF NOT EXISTS correction_anchors (
    source_message_id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    category TEXT NOT NULL,
    context TEXT NOT NULL,
    truth_value TEXT NOT NULL,
    confidence REAL NOT NULL,
    created_at TEXT NOT NULL,
    seq INTEGER NOT NULL
);

-- Prior row state for every write made under a batch key
CREATE TABLE IF NOT EXISTS write_journal (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    batch_key TEXT NOT NULL,
    table_name TEXT NOT NULL,
    row_key TEXT NOT NULL,
    previous TEXT,
    written_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_write_journal_batch ON write_journal(batch_key);
"""


def init_db(conn: sqlite3.Connection, db_path: Path) -> None:
    """Create tables and record the schema version.

    Args:
        conn: Database connection.
        db_path: Path to the database file (for permissions).
    """
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] != SCHEMA_VERSION:
        logger.info(f"Updating schema version {row[0]} -> {SCHEMA_VERSION}")
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))

    conn.commit()

    # Set secure file permissions (owner read/write only)
    try:
        os.chmod(db_path, 0o600)
    except OSError as e:
        logger.warning(f"Could not set secure permissions: {e}")

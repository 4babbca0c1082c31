"""SQLite partition store.

Local-first storage for routed messages:
- One row per message in ``partition_records`` (upsert keyed by message id)
- Source-author and subject-relevance index tables
- Append-only correction anchors
- A write journal holding the prior state of every row written under a
  batch key, so a failed batch can be reverted as a unit. Entries are
  discarded once a batch is final.
"""

import contextlib
import json
import logging
import re
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from strata.storage.base import (
    StorageError,
    StorageUnavailableError,
    anchor_to_row,
    entry_state,
    record_state,
    record_to_row,
)
from strata.storage.schema import TABLE_KEYS, init_db, validate_table_name
from strata.types import (
    CorrectionAnchor,
    CorrectionCategory,
    Destination,
    PartitionRecord,
    Role,
    SourceAuthorEntry,
    SubjectRelevanceEntry,
    utc_now,
)
from strata.utils import get_strata_home

logger = logging.getLogger(__name__)

_COLUMN_NAME = re.compile(r"^[a-z_][a-z0-9_]*$")


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SQLitePartitionStore:
    """Durable ``PartitionStore`` backed by a single SQLite file."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = self._validate_db_path(
            Path(db_path) if db_path else get_strata_home() / "strata.db"
        )
        self._write_lock = threading.Lock()
        self._init_db()

    def _validate_db_path(self, db_path: Path) -> Path:
        """Resolve the database path and make sure its directory exists."""
        try:
            resolved = db_path.expanduser().resolve()
            resolved.parent.mkdir(parents=True, exist_ok=True)
            return resolved
        except OSError as e:
            logger.error(f"Invalid database path: {e}")
            raise StorageUnavailableError(f"Invalid database path: {e}")

    def _get_conn(self) -> sqlite3.Connection:
        """Open a connection. Prefer the ``_connect()`` context manager."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=5.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
        except sqlite3.Error as e:
            logger.error(f"Cannot open partition store {self.db_path}: {e}")
            raise StorageUnavailableError(f"Cannot open partition store: {e}")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        try:
            with self._connect() as conn:
                init_db(conn, self.db_path)
        except sqlite3.Error as e:
            logger.error(f"Cannot initialize partition store: {e}")
            raise StorageUnavailableError(f"Cannot initialize partition store: {e}")

    def close(self):
        """Connections are per-operation; nothing to release."""
        pass

    # === Journal ===

    def _journal(
        self, conn: sqlite3.Connection, batch_key: Optional[str], table: str, row_key: str
    ) -> None:
        if not batch_key:
            return
        key_column = TABLE_KEYS[validate_table_name(table)]
        row = conn.execute(
            f"SELECT * FROM {table} WHERE {key_column} = ?", (row_key,)
        ).fetchone()
        previous = json.dumps(dict(row)) if row is not None else None
        conn.execute(
            """INSERT INTO write_journal (batch_key, table_name, row_key, previous, written_at)
               VALUES (?, ?, ?, ?, ?)""",
            (batch_key, table, row_key, previous, utc_now()),
        )

    @staticmethod
    def _insert_row(conn: sqlite3.Connection, table: str, row: Dict[str, Any]) -> None:
        table = validate_table_name(table)
        columns = list(row.keys())
        for column in columns:
            if not _COLUMN_NAME.match(column):
                raise StorageError(f"Invalid column name: {column}")
        placeholders = ", ".join("?" for _ in columns)
        conn.execute(
            f"INSERT OR REPLACE INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
            [row[c] for c in columns],
        )

    # === Partition records ===

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> PartitionRecord:
        return PartitionRecord(
            message_id=row["message_id"],
            thread_id=row["thread_id"],
            partition=Destination(row["partition"]),
            role=Role(row["role"]),
            content=row["content"],
            confidence=row["confidence"],
            drift_score=row["drift_score"],
            profile=json.loads(row["profile"] or "{}"),
            batch_key=row["batch_key"],
            committed_at=row["committed_at"],
            override_reason=row["override_reason"],
        )

    def _put_record(self, conn: sqlite3.Connection, record: PartitionRecord) -> bool:
        row = conn.execute(
            "SELECT * FROM partition_records WHERE message_id = ?", (record.message_id,)
        ).fetchone()
        if row is not None and record_state(self._row_to_record(row)) == record_state(record):
            return False
        self._journal(conn, record.batch_key, "partition_records", record.message_id)
        self._insert_row(conn, "partition_records", record_to_row(record))
        return True

    def upsert_record(self, record: PartitionRecord) -> bool:
        try:
            with self._write_lock, self._connect() as conn:
                return self._put_record(conn, record)
        except sqlite3.Error as e:
            logger.error(f"Failed to upsert record {record.message_id}: {e}")
            raise StorageError(f"Failed to upsert record {record.message_id}: {e}") from e

    def get_record(self, message_id: str) -> Optional[PartitionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM partition_records WHERE message_id = ?", (message_id,)
            ).fetchone()
        return self._row_to_record(row) if row is not None else None

    def query_partition(
        self, partition: Destination, limit: int = 100, offset: int = 0
    ) -> List[PartitionRecord]:
        partition = Destination(partition)
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM partition_records WHERE partition = ?
                   ORDER BY committed_at, message_id LIMIT ? OFFSET ?""",
                (partition.value, limit, offset),
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def records_for_thread(self, thread_id: str) -> List[PartitionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM partition_records WHERE thread_id = ? ORDER BY message_id",
                (thread_id,),
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def search(
        self, query: str, partition: Optional[Destination] = None, limit: int = 20
    ) -> List[PartitionRecord]:
        """Case-insensitive substring search over record content."""
        pattern = f"%{_escape_like(query)}%"
        sql = "SELECT * FROM partition_records WHERE content LIKE ? ESCAPE '\\'"
        params: List[Any] = [pattern]
        if partition is not None:
            sql += " AND partition = ?"
            params.append(Destination(partition).value)
        sql += " ORDER BY committed_at DESC, message_id LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_record(r) for r in rows]

    def partition_counts(self) -> Dict[str, int]:
        counts = {d.value: 0 for d in Destination}
        with self._connect() as conn:
            for row in conn.execute(
                "SELECT partition, COUNT(*) AS n FROM partition_records GROUP BY partition"
            ):
                counts[row["partition"]] = row["n"]
        return counts

    # === Derived indexes ===

    def _put_entry(self, conn: sqlite3.Connection, entry: Any) -> bool:
        if isinstance(entry, SourceAuthorEntry):
            table, row = "source_author_index", self._source_author_row(entry)
        else:
            table, row = "subject_relevance_index", self._subject_relevance_row(entry)
        existing = conn.execute(
            f"SELECT * FROM {validate_table_name(table)} WHERE message_id = ?",
            (entry.message_id,),
        ).fetchone()
        if existing is not None and self._entry_row_state(table, existing) == entry_state(entry):
            return False
        self._journal(conn, entry.batch_key, table, entry.message_id)
        self._insert_row(conn, table, row)
        return True

    def _upsert_entry(self, entry: Any) -> bool:
        try:
            with self._write_lock, self._connect() as conn:
                return self._put_entry(conn, entry)
        except sqlite3.Error as e:
            logger.error(f"Failed to index {entry.message_id}: {e}")
            raise StorageError(f"Failed to index {entry.message_id}: {e}") from e

    @staticmethod
    def _entry_row_state(table: str, row: sqlite3.Row):
        if table == "source_author_index":
            return (row["thread_id"], row["content"], row["confidence"])
        return (row["thread_id"], tuple(json.loads(row["keywords"])), row["relevance_score"])

    @staticmethod
    def _source_author_row(entry: SourceAuthorEntry) -> Dict[str, Any]:
        return {
            "message_id": entry.message_id,
            "thread_id": entry.thread_id,
            "content": entry.content,
            "confidence": int(entry.confidence),
            "batch_key": entry.batch_key,
            "indexed_at": entry.indexed_at,
        }

    @staticmethod
    def _subject_relevance_row(entry: SubjectRelevanceEntry) -> Dict[str, Any]:
        return {
            "message_id": entry.message_id,
            "thread_id": entry.thread_id,
            "keywords": json.dumps(list(entry.keywords)),
            "relevance_score": int(entry.relevance_score),
            "batch_key": entry.batch_key,
            "indexed_at": entry.indexed_at,
        }

    def upsert_source_author(self, entry: SourceAuthorEntry) -> bool:
        return self._upsert_entry(entry)

    def upsert_subject_relevance(self, entry: SubjectRelevanceEntry) -> bool:
        return self._upsert_entry(entry)

    def commit_message(
        self,
        record: PartitionRecord,
        source_author: Optional[SourceAuthorEntry] = None,
        subject_relevance: Optional[SubjectRelevanceEntry] = None,
    ) -> bool:
        """Write a record and its index entries in one transaction."""
        try:
            with self._write_lock, self._connect() as conn:
                changed = self._put_record(conn, record)
                for entry in (source_author, subject_relevance):
                    if entry is not None:
                        self._put_entry(conn, entry)
                return changed
        except sqlite3.Error as e:
            logger.error(f"Failed to commit message {record.message_id}: {e}")
            raise StorageError(f"Failed to commit message {record.message_id}: {e}") from e

    def index_counts(self) -> Dict[str, int]:
        with self._connect() as conn:
            source_author = conn.execute("SELECT COUNT(*) FROM source_author_index").fetchone()[0]
            subject = conn.execute("SELECT COUNT(*) FROM subject_relevance_index").fetchone()[0]
        return {"source_author": source_author, "subject_relevance": subject}

    def list_subject_relevance(self, min_score: int = 0, limit: int = 50) -> List[SubjectRelevanceEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM subject_relevance_index WHERE relevance_score >= ?
                   ORDER BY relevance_score DESC, message_id LIMIT ?""",
                (min_score, limit),
            ).fetchall()
        return [
            SubjectRelevanceEntry(
                message_id=r["message_id"],
                thread_id=r["thread_id"],
                keywords=json.loads(r["keywords"]),
                relevance_score=r["relevance_score"],
                batch_key=r["batch_key"],
                indexed_at=r["indexed_at"],
            )
            for r in rows
        ]

    # === Correction anchors ===

    def save_anchor(self, anchor: CorrectionAnchor) -> bool:
        try:
            with self._write_lock, self._connect() as conn:
                existing = conn.execute(
                    "SELECT confidence FROM correction_anchors WHERE source_message_id = ?",
                    (anchor.source_message_id,),
                ).fetchone()
                if existing is not None:
                    if existing["confidence"] >= anchor.confidence:
                        return False
                    conn.execute(
                        "UPDATE correction_anchors SET confidence = ? WHERE source_message_id = ?",
                        (float(anchor.confidence), anchor.source_message_id),
                    )
                    return True
                row = anchor_to_row(anchor)
                row["seq"] = conn.execute(
                    "SELECT COALESCE(MAX(seq), 0) + 1 FROM correction_anchors"
                ).fetchone()[0]
                self._insert_row(conn, "correction_anchors", row)
                return True
        except sqlite3.Error as e:
            logger.error(f"Failed to save anchor {anchor.source_message_id}: {e}")
            raise StorageError(f"Failed to save anchor: {e}") from e

    def list_anchors(self, limit: Optional[int] = None) -> List[CorrectionAnchor]:
        sql = "SELECT * FROM correction_anchors ORDER BY seq"
        params: List[Any] = []
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            CorrectionAnchor(
                source_message_id=r["source_message_id"],
                thread_id=r["thread_id"],
                category=CorrectionCategory(r["category"]),
                context=r["context"],
                truth_value=r["truth_value"],
                confidence=r["confidence"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # === Rollback ===

    def revert_batch(self, batch_key: str) -> int:
        """Restore every row written under ``batch_key`` to its prior state.

        Journal entries are replayed newest first. Returns the number of
        partition records reverted.
        """
        reverted = 0
        try:
            with self._write_lock, self._connect() as conn:
                entries = conn.execute(
                    """SELECT id, table_name, row_key, previous FROM write_journal
                       WHERE batch_key = ? ORDER BY id DESC""",
                    (batch_key,),
                ).fetchall()
                for entry in entries:
                    table = validate_table_name(entry["table_name"])
                    key_column = TABLE_KEYS[table]
                    if entry["previous"] is None:
                        conn.execute(f"DELETE FROM {table} WHERE {key_column} = ?", (entry["row_key"],))
                    else:
                        self._insert_row(conn, table, json.loads(entry["previous"]))
                    if table == "partition_records":
                        reverted += 1
                conn.execute("DELETE FROM write_journal WHERE batch_key = ?", (batch_key,))
        except sqlite3.Error as e:
            logger.error(f"Failed to revert batch {batch_key}: {e}")
            raise StorageError(f"Failed to revert batch {batch_key}: {e}") from e

        logger.info(f"Reverted {reverted} partition records for batch {batch_key}")
        return reverted

    def discard_journal(self, batch_key: str) -> int:
        """Forget the undo entries of ``batch_key`` once it is final."""
        try:
            with self._write_lock, self._connect() as conn:
                cursor = conn.execute("DELETE FROM write_journal WHERE batch_key = ?", (batch_key,))
                dropped = cursor.rowcount
        except sqlite3.Error as e:
            logger.error(f"Failed to discard journal for batch {batch_key}: {e}")
            raise StorageError(f"Failed to discard journal for batch {batch_key}: {e}") from e

        logger.debug(f"Discarded {dropped} journal entries for batch {batch_key}")
        return dropped

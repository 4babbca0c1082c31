"""In-memory partition store.

Same contract as the SQLite store, held in dicts. Used for dry runs and
tests; nothing survives the process.
"""

import copy
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from strata.storage.base import entry_state, record_state
from strata.types import (
    CorrectionAnchor,
    Destination,
    PartitionRecord,
    SourceAuthorEntry,
    SubjectRelevanceEntry,
)

logger = logging.getLogger(__name__)


class InMemoryPartitionStore:
    """Dict-backed ``PartitionStore``."""

    def __init__(self):
        self._lock = threading.RLock()
        self._records: Dict[str, PartitionRecord] = {}
        self._source_author: Dict[str, SourceAuthorEntry] = {}
        self._subject_relevance: Dict[str, SubjectRelevanceEntry] = {}
        self._anchors: Dict[str, CorrectionAnchor] = {}
        # batch_key -> [(table, key, previous value or None)]
        self._journal: Dict[str, List[Tuple[str, str, Any]]] = {}

    def _tables(self) -> Dict[str, Dict[str, Any]]:
        return {
            "partition_records": self._records,
            "source_author_index": self._source_author,
            "subject_relevance_index": self._subject_relevance,
        }

    def _write(
        self,
        table: str,
        key: str,
        value: Any,
        batch_key: Optional[str],
        undo: Optional[List[Tuple[str, str, Any, Optional[str]]]] = None,
    ) -> None:
        target = self._tables()[table]
        previous = copy.deepcopy(target.get(key))
        if batch_key:
            self._journal.setdefault(batch_key, []).append((table, key, previous))
        if undo is not None:
            undo.append((table, key, previous, batch_key))
        target[key] = copy.deepcopy(value)

    def _rewind(self, undo: List[Tuple[str, str, Any, Optional[str]]]) -> None:
        """Undo writes of a unit that did not complete, journal included."""
        tables = self._tables()
        for table, key, previous, batch_key in reversed(undo):
            if previous is None:
                tables[table].pop(key, None)
            else:
                tables[table][key] = previous
            if batch_key:
                entries = self._journal[batch_key]
                entries.pop()
                if not entries:
                    del self._journal[batch_key]

    def close(self):
        pass

    # === Partition records ===

    def _put_record(self, record: PartitionRecord, undo=None) -> bool:
        existing = self._records.get(record.message_id)
        if existing is not None and record_state(existing) == record_state(record):
            return False
        self._write("partition_records", record.message_id, record, record.batch_key, undo)
        return True

    def upsert_record(self, record: PartitionRecord) -> bool:
        with self._lock:
            return self._put_record(record)

    def get_record(self, message_id: str) -> Optional[PartitionRecord]:
        with self._lock:
            record = self._records.get(message_id)
            return copy.deepcopy(record) if record is not None else None

    def query_partition(
        self, partition: Destination, limit: int = 100, offset: int = 0
    ) -> List[PartitionRecord]:
        partition = Destination(partition)
        with self._lock:
            matching = sorted(
                (r for r in self._records.values() if r.partition == partition),
                key=lambda r: (r.committed_at, r.message_id),
            )
            return [copy.deepcopy(r) for r in matching[offset : offset + limit]]

    def records_for_thread(self, thread_id: str) -> List[PartitionRecord]:
        with self._lock:
            matching = sorted(
                (r for r in self._records.values() if r.thread_id == thread_id),
                key=lambda r: r.message_id,
            )
            return [copy.deepcopy(r) for r in matching]

    def search(
        self, query: str, partition: Optional[Destination] = None, limit: int = 20
    ) -> List[PartitionRecord]:
        needle = query.lower()
        wanted = Destination(partition) if partition is not None else None
        with self._lock:
            matching = [
                r
                for r in self._records.values()
                if needle in r.content.lower() and (wanted is None or r.partition == wanted)
            ]
        matching.sort(key=lambda r: r.message_id)
        matching.sort(key=lambda r: r.committed_at, reverse=True)
        return [copy.deepcopy(r) for r in matching[:limit]]

    def partition_counts(self) -> Dict[str, int]:
        counts = {d.value: 0 for d in Destination}
        with self._lock:
            for record in self._records.values():
                counts[record.partition.value] += 1
        return counts

    # === Derived indexes ===

    def _put_entry(self, table: str, entry: Any, undo=None) -> bool:
        existing = self._tables()[table].get(entry.message_id)
        if existing is not None and entry_state(existing) == entry_state(entry):
            return False
        self._write(table, entry.message_id, entry, entry.batch_key, undo)
        return True

    def upsert_source_author(self, entry: SourceAuthorEntry) -> bool:
        with self._lock:
            return self._put_entry("source_author_index", entry)

    def upsert_subject_relevance(self, entry: SubjectRelevanceEntry) -> bool:
        with self._lock:
            return self._put_entry("subject_relevance_index", entry)

    def commit_message(
        self,
        record: PartitionRecord,
        source_author: Optional[SourceAuthorEntry] = None,
        subject_relevance: Optional[SubjectRelevanceEntry] = None,
    ) -> bool:
        undo: List[Tuple[str, str, Any, Optional[str]]] = []
        with self._lock:
            try:
                changed = self._put_record(record, undo)
                if source_author is not None:
                    self._put_entry("source_author_index", source_author, undo)
                if subject_relevance is not None:
                    self._put_entry("subject_relevance_index", subject_relevance, undo)
            except Exception:
                self._rewind(undo)
                raise
            return changed

    def index_counts(self) -> Dict[str, int]:
        with self._lock:
            return {
                "source_author": len(self._source_author),
                "subject_relevance": len(self._subject_relevance),
            }

    def list_subject_relevance(self, min_score: int = 0, limit: int = 50) -> List[SubjectRelevanceEntry]:
        with self._lock:
            matching = [e for e in self._subject_relevance.values() if e.relevance_score >= min_score]
        matching.sort(key=lambda e: e.message_id)
        matching.sort(key=lambda e: e.relevance_score, reverse=True)
        return [copy.deepcopy(e) for e in matching[:limit]]

    # === Correction anchors ===

    def save_anchor(self, anchor: CorrectionAnchor) -> bool:
        with self._lock:
            existing = self._anchors.get(anchor.source_message_id)
            if existing is None:
                self._anchors[anchor.source_message_id] = copy.deepcopy(anchor)
                return True
            if existing.confidence >= anchor.confidence:
                return False
            existing.confidence = anchor.confidence
            return True

    def list_anchors(self, limit: Optional[int] = None) -> List[CorrectionAnchor]:
        with self._lock:
            anchors = [copy.deepcopy(a) for a in self._anchors.values()]
        return anchors if limit is None else anchors[:limit]

    # === Rollback ===

    def revert_batch(self, batch_key: str) -> int:
        reverted = 0
        with self._lock:
            entries = self._journal.pop(batch_key, [])
            tables = self._tables()
            for table, key, previous in reversed(entries):
                if previous is None:
                    tables[table].pop(key, None)
                else:
                    tables[table][key] = previous
                if table == "partition_records":
                    reverted += 1
        logger.info(f"Reverted {reverted} partition records for batch {batch_key}")
        return reverted

    def discard_journal(self, batch_key: str) -> int:
        with self._lock:
            return len(self._journal.pop(batch_key, []))

"""
strata Protocol Definitions
===========================

Interface contracts between the pipeline stages and their collaborators.

Components and their roles:
- EventSink:      Receives audit events from every stage. Injected, never global.
- PartitionStore: Durable home of routed messages and the two derived indexes.
- ThreadSource:   Where raw conversations come from (file, HTTP service).
- DriftDetector:  One named heuristic, ``(message, window) -> observations``.

Error handling philosophy:
- Input errors (missing or unparsable export) are fatal to the run
- A malformed conversation is skipped; the rest of the export is parsed
- A failed partition write is counted per message, never silently dropped
- An unusable store aborts the run after the current batch is marked failed
- Invalid arguments raise ValueError (ConfigError for configuration)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

from strata.types import (
    AuditEvent,
    AuditLevel,
    CorrectionAnchor,
    Destination,
    Message,
    PartitionRecord,
    PatternObservation,
    Severity,
    SourceAuthorEntry,
    Stage,
    SubjectRelevanceEntry,
)

# =============================================================================
# ERRORS
# =============================================================================


class StrataError(Exception):
    """Base for all strata errors."""

    pass


class InputError(StrataError):
    """Raised when the export file is missing or cannot be parsed at all."""

    pass


class ConversationParseError(StrataError):
    """Raised for a single malformed conversation. Recovered by the parser."""

    def __init__(self, conversation_id: Optional[str], reason: str):
        super().__init__(f"Conversation {conversation_id or '<unknown>'}: {reason}")
        self.conversation_id = conversation_id
        self.reason = reason


class ConfigError(StrataError, ValueError):
    """Raised when a configuration value is out of range or of the wrong type."""

    pass


class StorageError(StrataError):
    """Raised by partition stores when a single write fails."""

    pass


class StorageUnavailableError(StorageError):
    """Raised when the store itself cannot be used. Fatal for the run."""

    pass


class InvalidTransitionError(StrataError):
    """Raised when a batch is moved to a state its lifecycle does not allow."""

    def __init__(self, batch_number: int, current: str, target: str):
        super().__init__(f"Batch {batch_number}: illegal transition {current} -> {target}")
        self.batch_number = batch_number
        self.current = current
        self.target = target


class CheckpointChainError(StrataError):
    """Raised when the checkpoint chain would break ordering or fails verification."""

    pass


# =============================================================================
# SOURCE CRITERIA
# =============================================================================


@dataclass
class ThreadCriteria:
    """Filter applied when fetching raw conversations from a source."""

    since: Optional[float] = None  # Epoch seconds, inclusive, on update time
    until: Optional[float] = None  # Epoch seconds, inclusive, on update time
    title_contains: Optional[str] = None
    limit: Optional[int] = None

    def matches(self, conversation: Dict[str, Any]) -> bool:
        updated = conversation.get("update_time") or conversation.get("create_time")
        if self.since is not None and (updated is None or float(updated) < self.since):
            return False
        if self.until is not None and (updated is None or float(updated) > self.until):
            return False
        if self.title_contains:
            title = conversation.get("title") or ""
            if self.title_contains.lower() not in str(title).lower():
                return False
        return True

    def apply(self, conversations: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        selected = [c for c in conversations if isinstance(c, dict) and self.matches(c)]
        if self.limit is not None:
            selected = selected[: self.limit]
        return selected


# =============================================================================
# EVENT SINK
# =============================================================================


@runtime_checkable
class EventSink(Protocol):
    """Receives audit events from every pipeline stage.

    Implementations must accept concurrent appends and order events by a
    monotonic sequence counter rather than wall-clock time.
    """

    def record(
        self,
        event_type: str,
        description: str,
        *,
        stage: Stage,
        severity: Severity = Severity.LOW,
        level: AuditLevel = AuditLevel.BASIC,
        **details: Any,
    ) -> Optional[AuditEvent]:
        """Append an event. Returns None when verbosity filters it out."""
        ...

    def events(self) -> List[AuditEvent]:
        """All retained events in sequence order."""
        ...


# =============================================================================
# PARTITION STORE
# =============================================================================


@runtime_checkable
class PartitionStore(Protocol):
    """Storage contract the memory router requires.

    Append, query-by-partition and idempotent upsert keyed by message id.
    Every write carries the batch key it was made under so a batch can be
    reverted as a unit.
    """

    def upsert_record(self, record: PartitionRecord) -> bool:
        """Insert or replace the record for ``record.message_id``.

        Returns True if stored state changed, False for an identical re-commit.
        """
        ...

    def get_record(self, message_id: str) -> Optional[PartitionRecord]:
        ...

    def query_partition(
        self, partition: Destination, limit: int = 100, offset: int = 0
    ) -> List[PartitionRecord]:
        ...

    def search(
        self, query: str, partition: Optional[Destination] = None, limit: int = 20
    ) -> List[PartitionRecord]:
        ...

    def partition_counts(self) -> Dict[str, int]:
        ...

    def upsert_source_author(self, entry: SourceAuthorEntry) -> bool:
        ...

    def upsert_subject_relevance(self, entry: SubjectRelevanceEntry) -> bool:
        ...

    def commit_message(
        self,
        record: PartitionRecord,
        source_author: Optional[SourceAuthorEntry] = None,
        subject_relevance: Optional[SubjectRelevanceEntry] = None,
    ) -> bool:
        """Write a record and its index entries as one unit.

        Either every row lands or none does. Returns True if the record
        changed.
        """
        ...

    def index_counts(self) -> Dict[str, int]:
        ...

    def save_anchor(self, anchor: CorrectionAnchor) -> bool:
        """Append an anchor. Never lowers the confidence of an existing one."""
        ...

    def list_anchors(self, limit: Optional[int] = None) -> List[CorrectionAnchor]:
        ...

    def revert_batch(self, batch_key: str) -> int:
        """Undo every write made under ``batch_key``. Returns records reverted."""
        ...

    def discard_journal(self, batch_key: str) -> int:
        """Drop the undo entries of a batch that will not be reverted.

        Returns the number of entries dropped.
        """
        ...


# =============================================================================
# THREAD SOURCE
# =============================================================================


@runtime_checkable
class ThreadSource(Protocol):
    """Where raw conversations come from."""

    def fetch_threads(self, criteria: Optional[ThreadCriteria] = None) -> List[Dict[str, Any]]:
        """Return raw conversation objects in discovery order."""
        ...


# =============================================================================
# DRIFT DETECTOR
# =============================================================================


@runtime_checkable
class DriftDetector(Protocol):
    """A named, pure drift heuristic."""

    __name__: str

    def __call__(
        self, message: Message, window: Sequence[Message]
    ) -> List[PatternObservation]:
        ...

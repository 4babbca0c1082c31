"""Memory router: commits analyzed messages to their partitions.

Each message lands in exactly one of ``primary``, ``sandbox`` or
``quarantine``. The analyzer's per-message verdict is first constrained by
the thread's integration strategy:

- ``full``: verdict kept as is
- ``filtered``: primary kept only for pattern-free messages and corrections
- ``sandbox_only``: primary demoted to sandbox
- ``reject``: everything quarantined and counted as rejected

Writes are upserts keyed by message id, so committing the same batch twice
leaves the stores unchanged. A failed write for one message is counted as
not processed and the batch carries on; an unusable store aborts.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from strata.audit import AuditLog
from strata.config import PipelineConfig
from strata.drift.analyzer import is_correction
from strata.patterns import compile_terms
from strata.protocols import EventSink, PartitionStore, StorageError, StorageUnavailableError
from strata.types import (
    AuditLevel,
    CorrectionAnchor,
    Destination,
    IntegrationStrategy,
    MessageDriftAnalysis,
    PartitionRecord,
    Role,
    Severity,
    SourceAuthorEntry,
    Stage,
    SubjectRelevanceEntry,
    ThreadAnalysis,
    utc_now,
)

logger = logging.getLogger(__name__)

RELEVANCE_POINTS_PER_KEYWORD = 10
MAX_RELEVANCE_SCORE = 100

# Strategies under which nothing from the thread may be promoted to primary
NO_PRIMARY_STRATEGIES = frozenset({IntegrationStrategy.REJECT, IntegrationStrategy.SANDBOX_ONLY})


def apply_strategy(analysis: MessageDriftAnalysis, strategy: IntegrationStrategy) -> Destination:
    """Final partition for ``analysis`` under the thread's integration strategy."""
    destination = analysis.destination
    if strategy == IntegrationStrategy.REJECT:
        return Destination.QUARANTINE
    if strategy == IntegrationStrategy.SANDBOX_ONLY and destination == Destination.PRIMARY:
        return Destination.SANDBOX
    if (
        strategy == IntegrationStrategy.FILTERED
        and destination == Destination.PRIMARY
        and analysis.observations
        and not is_correction(analysis.message)
    ):
        return Destination.SANDBOX
    return destination


def relevance_score(keywords: Sequence[str]) -> int:
    return min(MAX_RELEVANCE_SCORE, RELEVANCE_POINTS_PER_KEYWORD * len(keywords))


@dataclass
class ThreadCommitResult:
    """Per-thread outcome of a commit."""

    thread_id: str
    strategy: IntegrationStrategy
    attempted: int = 0
    processed: int = 0
    partitions: Dict[str, int] = field(default_factory=lambda: {d.value: 0 for d in Destination})
    failed_message_ids: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.processed == self.attempted

    def to_dict(self) -> Dict:
        return {
            "thread_id": self.thread_id,
            "strategy": self.strategy.value,
            "attempted": self.attempted,
            "processed": self.processed,
            "partitions": dict(self.partitions),
            "failed_message_ids": list(self.failed_message_ids),
        }


@dataclass
class RoutingResult:
    """Aggregate counts for one committed batch."""

    batch_key: str
    dry_run: bool = False
    primary: int = 0
    sandbox: int = 0
    quarantine: int = 0
    rejected: int = 0
    source_author: int = 0
    subject_relevance: int = 0
    attempted: int = 0
    processed: int = 0
    changed: int = 0  # Records whose stored state actually changed
    errors: List[str] = field(default_factory=list)
    threads: List[ThreadCommitResult] = field(default_factory=list)

    @property
    def not_processed(self) -> int:
        return self.attempted - self.processed

    @property
    def processed_ratio(self) -> float:
        """Processed / attempted; 1.0 for an empty batch."""
        if self.attempted == 0:
            return 1.0
        return self.processed / self.attempted

    def to_dict(self) -> Dict:
        return {
            "batch_key": self.batch_key,
            "dry_run": self.dry_run,
            "primary": self.primary,
            "sandbox": self.sandbox,
            "quarantine": self.quarantine,
            "rejected": self.rejected,
            "source_author": self.source_author,
            "subject_relevance": self.subject_relevance,
            "attempted": self.attempted,
            "processed": self.processed,
            "not_processed": self.not_processed,
            "processed_ratio": round(self.processed_ratio, 4),
            "changed": self.changed,
            "errors": list(self.errors),
            "threads": [t.to_dict() for t in self.threads],
        }


class MemoryRouter:
    """Route analyzed threads into a ``PartitionStore``."""

    def __init__(
        self,
        store: PartitionStore,
        *,
        sink: Optional[EventSink] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self.store = store
        self.sink = sink if sink is not None else AuditLog()
        self.config = config or PipelineConfig()
        self._keyword_patterns = {
            keyword: compile_terms([keyword]) for keyword in self.config.relevance_keywords
        }

    def matched_keywords(self, content: str) -> List[str]:
        return [k for k, pattern in self._keyword_patterns.items() if pattern.search(content)]

    def is_source_author(self, analysis: MessageDriftAnalysis) -> bool:
        message = analysis.message
        confidence = message.confidence.overall if message.confidence else 0
        return message.role == Role.USER and confidence >= self.config.source_author_min_confidence

    def commit_batch(
        self,
        threads: Sequence[ThreadAnalysis],
        batch_key: str,
        dry_run: bool = False,
    ) -> RoutingResult:
        """Commit every message of ``threads`` in order.

        Raises:
            StorageUnavailableError: If the store cannot be reached at all
        """
        result = RoutingResult(batch_key=batch_key, dry_run=dry_run)
        for thread in threads:
            result.threads.append(self._commit_thread(thread, batch_key, dry_run, result))

        logger.info(
            f"Batch {batch_key}: {result.processed}/{result.attempted} committed "
            f"(primary={result.primary} sandbox={result.sandbox} quarantine={result.quarantine})"
        )
        return result

    def _commit_thread(
        self,
        thread: ThreadAnalysis,
        batch_key: str,
        dry_run: bool,
        result: RoutingResult,
    ) -> ThreadCommitResult:
        strategy = thread.profile.strategy
        outcome = ThreadCommitResult(thread_id=thread.thread_id, strategy=strategy)
        profile = thread.profile.to_dict()

        for analysis in thread.analyses:
            message = analysis.message
            destination = apply_strategy(analysis, strategy)
            keywords = self.matched_keywords(message.content)
            source_author = self.is_source_author(analysis)
            outcome.attempted += 1
            result.attempted += 1

            if not dry_run:
                try:
                    changed = self._write_message(
                        analysis, destination, profile, keywords, source_author, batch_key
                    )
                except StorageUnavailableError:
                    raise
                except StorageError as e:
                    logger.error(f"Failed to commit message {message.id}: {e}")
                    outcome.failed_message_ids.append(message.id)
                    result.errors.append(f"{message.id}: {e}")
                    self.sink.record(
                        "message.commit_failed",
                        f"Could not commit message {message.id}",
                        stage=Stage.ROUTER,
                        severity=Severity.HIGH,
                        message_id=message.id,
                        thread_id=message.thread_id,
                        batch_key=batch_key,
                        error=str(e),
                    )
                    continue
                if changed:
                    result.changed += 1

            outcome.processed += 1
            outcome.partitions[destination.value] += 1
            result.processed += 1
            setattr(result, destination.value, getattr(result, destination.value) + 1)
            if strategy == IntegrationStrategy.REJECT:
                result.rejected += 1
            if source_author:
                result.source_author += 1
            if keywords:
                result.subject_relevance += 1

        self.sink.record(
            "thread.committed",
            f"{outcome.processed}/{outcome.attempted} messages committed ({strategy.value})",
            stage=Stage.ROUTER,
            severity=Severity.LOW if outcome.succeeded else Severity.MEDIUM,
            level=AuditLevel.STANDARD,
            thread_id=thread.thread_id,
            batch_key=batch_key,
            dry_run=dry_run,
            partitions=dict(outcome.partitions),
        )
        return outcome

    def _write_message(
        self,
        analysis: MessageDriftAnalysis,
        destination: Destination,
        profile: Dict,
        keywords: List[str],
        source_author: bool,
        batch_key: str,
    ) -> bool:
        message = analysis.message
        confidence = message.confidence.overall if message.confidence else 0
        record = PartitionRecord(
                message_id=message.id,
                thread_id=message.thread_id,
                partition=destination,
                role=message.role,
                content=message.content,
                confidence=confidence,
                drift_score=analysis.drift_score,
                profile=profile,
                batch_key=batch_key,
        )
        source_entry = None
        if source_author:
            source_entry = SourceAuthorEntry(
                message_id=message.id,
                thread_id=message.thread_id,
                content=message.content,
                confidence=confidence,
                batch_key=batch_key,
            )
        relevance_entry = None
        if keywords:
            relevance_entry = SubjectRelevanceEntry(
                message_id=message.id,
                thread_id=message.thread_id,
                keywords=keywords,
                relevance_score=relevance_score(keywords),
                batch_key=batch_key,
            )
        # Record and index entries land together or not at all
        return self.store.commit_message(record, source_entry, relevance_entry)

    def save_anchors(self, anchors: Sequence[CorrectionAnchor]) -> int:
        """Persist correction anchors. Returns how many were new or strengthened."""
        saved = 0
        for anchor in anchors:
            if self.store.save_anchor(anchor):
                saved += 1
        return saved

    def override(
        self,
        message_id: str,
        partition: Destination,
        reason: str,
        *,
        batch_key: Optional[str] = None,
    ) -> PartitionRecord:
        """Move a committed message to another partition after manual review.

        Raises:
            ValueError: If the message is unknown, or ``primary`` is requested
                for a thread whose strategy forbids it
        """
        partition = Destination(partition)
        record = self.store.get_record(message_id)
        if record is None:
            raise ValueError(f"No committed message with id {message_id}")

        strategy = record.profile.get("strategy")
        if partition == Destination.PRIMARY and strategy in {s.value for s in NO_PRIMARY_STRATEGIES}:
            raise ValueError(
                f"Message {message_id} belongs to a thread with strategy {strategy}; "
                "it cannot be moved to primary"
            )

        updated = dataclasses.replace(
            record,
            partition=partition,
            override_reason=reason,
            batch_key=batch_key,
            committed_at=utc_now(),
        )
        self.store.upsert_record(updated)
        self.sink.record(
            "partition.override",
            f"Moved {message_id} from {record.partition.value} to {partition.value}",
            stage=Stage.ROUTER,
            severity=Severity.MEDIUM,
            message_id=message_id,
            thread_id=record.thread_id,
            previous=record.partition.value,
            partition=partition.value,
            reason=reason,
        )
        logger.info(f"Override: {message_id} {record.partition.value} -> {partition.value}")
        return updated

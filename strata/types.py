"""
Shared types for strata.

Every record that crosses a component boundary lives here: parsed messages
and their confidence scores, drift observations, per-thread profiles,
checkpoints, partition records and audit events. Components exchange these
dataclasses; the enums are the closed vocabularies for every configuration
and routing axis.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Shared Utility Functions ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string, returning None for empty or invalid input."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None


# === Enums ===


class Role(str, Enum):
    """Author role of a message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


VALID_ROLE_VALUES = frozenset(r.value for r in Role)


class OperatingMode(str, Enum):
    """How a pipeline run treats the partition store."""

    BATCH = "batch"  # Commit routed messages
    DRY_RUN = "dry_run"  # Simulate commits, persist nothing


class AuditLevel(str, Enum):
    """Audit verbosity. Each level includes everything below it."""

    BASIC = "basic"  # Run, batch, checkpoint and error events
    STANDARD = "standard"  # Plus per-thread decisions
    COMPREHENSIVE = "comprehensive"  # Plus per-message flags and verdicts

    @property
    def rank(self) -> int:
        return _AUDIT_LEVEL_RANK[self]


_AUDIT_LEVEL_RANK = {
    AuditLevel.BASIC: 0,
    AuditLevel.STANDARD: 1,
    AuditLevel.COMPREHENSIVE: 2,
}


class Severity(str, Enum):
    """Audit and flag severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Stage(str, Enum):
    """Pipeline component that emitted an audit event."""

    PARSER = "parser"
    ANALYZER = "analyzer"
    ORCHESTRATOR = "orchestrator"
    ROUTER = "router"
    PIPELINE = "pipeline"


class MarkerType(str, Enum):
    """Parse-time drift marker types."""

    SEMANTIC_SHIFT = "semantic_shift"
    CREATOR_CORRECTION = "creator_correction"


# Fixed marker confidence per marker type
MARKER_CONFIDENCE = {
    MarkerType.SEMANTIC_SHIFT: 0.7,
    MarkerType.CREATOR_CORRECTION: 1.0,
}


class PatternType(str, Enum):
    """Drift pattern categories reported by the detectors."""

    SEMANTIC_INCONSISTENCY = "semantic_inconsistency"
    BEHAVIORAL_SHIFT = "behavioral_shift"
    FACTUAL_CONTRADICTION = "factual_contradiction"
    TONE_DRIFT = "tone_drift"


class Destination(str, Enum):
    """Memory partition a message is routed to."""

    PRIMARY = "primary"
    SANDBOX = "sandbox"
    QUARANTINE = "quarantine"


VALID_DESTINATION_VALUES = frozenset(d.value for d in Destination)


class ReliabilityTier(str, Enum):
    """Thread-level reliability classification."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    QUARANTINE = "quarantine"


class IntegrationStrategy(str, Enum):
    """How a thread's messages may enter memory."""

    FULL = "full"
    FILTERED = "filtered"
    SANDBOX_ONLY = "sandbox_only"
    REJECT = "reject"


# Reliability tier maps 1:1 onto integration strategy
TIER_STRATEGY = {
    ReliabilityTier.HIGH: IntegrationStrategy.FULL,
    ReliabilityTier.MEDIUM: IntegrationStrategy.FILTERED,
    ReliabilityTier.LOW: IntegrationStrategy.SANDBOX_ONLY,
    ReliabilityTier.QUARANTINE: IntegrationStrategy.REJECT,
}


class CorrectionCategory(str, Enum):
    """Keyword bucket of a correction anchor."""

    FACTUAL = "factual"
    BEHAVIORAL = "behavioral"
    TECHNICAL = "technical"
    STRATEGIC = "strategic"


class ReviewStatus(str, Enum):
    """Parse-time review recommendation for a thread."""

    APPROVED = "approved"
    REQUIRES_REVIEW = "requires_review"
    FLAGGED = "flagged"


class CheckpointMarkerType(str, Enum):
    """Why a rollback checkpoint was written."""

    BATCH_START = "batch_start"
    PHASE_COMPLETE = "phase_complete"
    EMERGENCY_STOP = "emergency_stop"


class BatchStatus(str, Enum):
    """Batch lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


TERMINAL_BATCH_STATUSES = frozenset(
    {BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.ROLLED_BACK}
)


# === Parsed Conversation Types ===


@dataclass
class ConfidenceScore:
    """Reliability score attached 1:1 to a message at parse time."""

    overall: int  # 0-100
    has_correction: bool = False
    semantic_consistency: int = 0
    factual_accuracy: int = 0
    tone_consistency: int = 0
    technical_coherence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall": self.overall,
            "has_correction": self.has_correction,
            "semantic_consistency": self.semantic_consistency,
            "factual_accuracy": self.factual_accuracy,
            "tone_consistency": self.tone_consistency,
            "technical_coherence": self.technical_coherence,
        }


@dataclass
class DriftMarker:
    """A discrete drift signal found in one message's text."""

    type: MarkerType
    position: int  # Character offset into content
    context: str
    confidence: float  # 0.0-1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "position": self.position,
            "context": self.context,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class Message:
    """One utterance in a thread. Immutable once parsed."""

    id: str
    thread_id: str
    role: Role
    content: str
    created_at: float  # Epoch seconds
    sequence: int  # Zero-based position within the thread
    confidence: Optional[ConfidenceScore] = field(default=None, compare=False)
    markers: tuple = field(default_factory=tuple, compare=False)

    @property
    def has_correction(self) -> bool:
        return bool(self.confidence and self.confidence.has_correction)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "role": self.role.value,
            "content": self.content,
            "created_at": self.created_at,
            "sequence": self.sequence,
            "confidence": self.confidence.to_dict() if self.confidence else None,
            "markers": [m.to_dict() for m in self.markers],
        }


@dataclass
class ParsedThread:
    """A conversation after parsing, with its parse-time summary."""

    id: str
    title: str
    messages: List[Message] = field(default_factory=list)
    created_at: Optional[float] = None
    updated_at: Optional[float] = None
    overall_confidence: float = 0.0
    marker_count: int = 0
    correction_count: int = 0
    review_status: ReviewStatus = ReviewStatus.FLAGGED

    @property
    def message_count(self) -> int:
        return len(self.messages)


# === Drift Analysis Types ===


@dataclass
class PatternObservation:
    """One detector finding for one message."""

    type: PatternType
    severity: int  # 0-100
    description: str
    evidence: str = ""
    correction_available: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity,
            "description": self.description,
            "evidence": self.evidence,
            "correction_available": self.correction_available,
        }


@dataclass
class CorrectionAnchor:
    """A user statement that explicitly corrects prior assistant content."""

    source_message_id: str
    thread_id: str
    category: CorrectionCategory
    context: str  # Short excerpt of the correcting message
    truth_value: str
    confidence: float = 0.95
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_message_id": self.source_message_id,
            "thread_id": self.thread_id,
            "category": self.category.value,
            "context": self.context,
            "truth_value": self.truth_value,
            "confidence": self.confidence,
            "created_at": self.created_at,
        }


@dataclass
class MessageDriftAnalysis:
    """Drift verdict for a single message in its context window."""

    message: Message
    drift_score: float  # 0-100
    destination: Destination
    observations: List[PatternObservation] = field(default_factory=list)
    nearby_anchors: List[CorrectionAnchor] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)

    @property
    def message_id(self) -> str:
        return self.message.id

    @property
    def pattern_types(self) -> List[PatternType]:
        """Distinct pattern categories this message triggered, in detection order."""
        seen: List[PatternType] = []
        for obs in self.observations:
            if obs.type not in seen:
                seen.append(obs.type)
        return seen


@dataclass
class ThreadDriftProfile:
    """Aggregate of all per-message drift analyses for one thread."""

    thread_id: str
    overall_drift: float = 0.0
    pattern_histogram: Dict[str, int] = field(default_factory=dict)
    correction_density: float = 0.0
    reliability_tier: ReliabilityTier = ReliabilityTier.HIGH
    strategy: IntegrationStrategy = IntegrationStrategy.FULL
    message_count: int = 0
    destination_counts: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "overall_drift": self.overall_drift,
            "pattern_histogram": dict(self.pattern_histogram),
            "correction_density": self.correction_density,
            "reliability_tier": self.reliability_tier.value,
            "strategy": self.strategy.value,
            "message_count": self.message_count,
            "destination_counts": dict(self.destination_counts),
        }


@dataclass
class ThreadAnalysis:
    """Everything the analyzer produced for one thread."""

    thread: ParsedThread
    profile: ThreadDriftProfile
    analyses: List[MessageDriftAnalysis] = field(default_factory=list)
    anchors: List[CorrectionAnchor] = field(default_factory=list)

    @property
    def thread_id(self) -> str:
        return self.thread.id


# === Orchestration Types ===


@dataclass(frozen=True)
class RollbackCheckpoint:
    """Immutable progress marker written before a batch or on failure."""

    sequence: int
    timestamp: str
    marker_type: CheckpointMarkerType
    batch_number: int
    processed_threads: int
    last_processed_id: Optional[str]
    content_hash: str
    previous_hash: Optional[str]
    storage_ref: str
    run_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "marker_type": self.marker_type.value,
            "batch_number": self.batch_number,
            "checkpoint_data": {
                "processed_threads": self.processed_threads,
                "last_processed_id": self.last_processed_id,
            },
            "content_hash": self.content_hash,
            "previous_hash": self.previous_hash,
            "storage_ref": self.storage_ref,
            "run_id": self.run_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RollbackCheckpoint":
        checkpoint_data = data.get("checkpoint_data") or {}
        return cls(
            sequence=int(data["sequence"]),
            timestamp=data["timestamp"],
            marker_type=CheckpointMarkerType(data["marker_type"]),
            batch_number=int(data["batch_number"]),
            processed_threads=int(checkpoint_data.get("processed_threads", 0)),
            last_processed_id=checkpoint_data.get("last_processed_id"),
            content_hash=data["content_hash"],
            previous_hash=data.get("previous_hash"),
            storage_ref=data.get("storage_ref", ""),
            run_id=data.get("run_id", ""),
        )


@dataclass
class PartitionRecord:
    """The unit committed by the memory router."""

    message_id: str
    thread_id: str
    partition: Destination
    role: Role
    content: str
    confidence: int
    drift_score: float
    profile: Dict[str, Any] = field(default_factory=dict)  # Profile that justified the destination
    batch_key: Optional[str] = None
    committed_at: str = field(default_factory=utc_now)
    override_reason: Optional[str] = None


@dataclass
class SourceAuthorEntry:
    """Index entry for a trustworthy user-authored message."""

    message_id: str
    thread_id: str
    content: str
    confidence: int
    batch_key: Optional[str] = None
    indexed_at: str = field(default_factory=utc_now)


@dataclass
class SubjectRelevanceEntry:
    """Index entry for a message matching the relevance keyword set."""

    message_id: str
    thread_id: str
    keywords: List[str] = field(default_factory=list)
    relevance_score: int = 0
    batch_key: Optional[str] = None
    indexed_at: str = field(default_factory=utc_now)


@dataclass(frozen=True)
class AuditEvent:
    """Append-only audit log entry."""

    sequence: int  # Monotonic, assigned by the sink
    timestamp: str
    event_type: str
    severity: Severity
    description: str
    stage: Stage
    details: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "event_type": self.event_type,
            "severity": self.severity.value,
            "description": self.description,
            "stage": self.stage.value,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(
            sequence=int(data["sequence"]),
            timestamp=data["timestamp"],
            event_type=data["event_type"],
            severity=Severity(data["severity"]),
            description=data.get("description", ""),
            stage=Stage(data["stage"]),
            details=data.get("details") or {},
        )

"""Drift analysis: per-message verdicts and per-thread profiles.

For every message the analyzer runs the detector registry over a symmetric
context window, turns the observations into a drift score, and picks a
memory destination. User corrections become ``CorrectionAnchor`` records
in an append-only side index. Per-thread results are aggregated into a
``ThreadDriftProfile`` whose reliability tier fixes the thread's
integration strategy.
"""

import logging
import threading
from statistics import mean
from typing import Dict, List, Optional, Sequence

from strata.audit import AuditLog, DeferredSink
from strata.config import PipelineConfig
from strata.drift.detectors import default_detectors
from strata.patterns import (
    BEHAVIORAL_BUCKET,
    OPERATIONAL_VOCABULARY,
    TECHNICAL_BUCKET,
    TRUTH_VALUE_PATTERNS,
)
from strata.protocols import DriftDetector, EventSink
from strata.types import (
    TIER_STRATEGY,
    AuditLevel,
    CorrectionAnchor,
    CorrectionCategory,
    Destination,
    Message,
    MessageDriftAnalysis,
    ParsedThread,
    PatternType,
    ReliabilityTier,
    Role,
    Severity,
    Stage,
    ThreadAnalysis,
    ThreadDriftProfile,
)
from strata.utils import clamp

logger = logging.getLogger(__name__)

CONFIDENCE_ADJUSTMENT = 0.3
ANCHOR_CONFIDENCE = 0.95
ANCHOR_CONTEXT_CHARS = 200
TRUTH_FALLBACK_CHARS = 100
CORRECTION_LOOKAHEAD = 3


def score_drift(severities: Sequence[float], confidence: float) -> float:
    """Mean severity plus a low-confidence adjustment, clamped to [0, 100].

    No observations means no drift, whatever the confidence.
    """
    if not severities:
        return 0.0
    adjustment = max(0.0, (100 - confidence) * CONFIDENCE_ADJUSTMENT)
    return round(clamp(mean(severities) + adjustment, 0, 100), 2)


def categorize_correction(content: str) -> CorrectionCategory:
    if OPERATIONAL_VOCABULARY.search(content):
        return CorrectionCategory.STRATEGIC
    if TECHNICAL_BUCKET.search(content):
        return CorrectionCategory.TECHNICAL
    if BEHAVIORAL_BUCKET.search(content):
        return CorrectionCategory.BEHAVIORAL
    return CorrectionCategory.FACTUAL


def extract_truth_value(content: str) -> str:
    """Trailing clause of "actually / correct answer is / should be" phrasing."""
    for pattern in TRUTH_VALUE_PATTERNS:
        match = pattern.search(content)
        if match:
            value = match.group(1).strip()
            if value:
                return value
    return content[:TRUTH_FALLBACK_CHARS]


def build_anchor(message: Message) -> CorrectionAnchor:
    return CorrectionAnchor(
        source_message_id=message.id,
        thread_id=message.thread_id,
        category=categorize_correction(message.content),
        context=message.content[:ANCHOR_CONTEXT_CHARS],
        truth_value=extract_truth_value(message.content),
        confidence=ANCHOR_CONFIDENCE,
    )


def is_correction(message: Message) -> bool:
    return message.role == Role.USER and message.has_correction


class AnchorIndex:
    """Append-only correction anchor index, keyed by source message id.

    Re-adding an anchor for the same message never removes or weakens the
    stored one; a higher confidence replaces a lower one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._anchors: Dict[str, CorrectionAnchor] = {}

    def add(self, anchor: CorrectionAnchor) -> bool:
        """Store ``anchor``. Returns True if the index changed."""
        with self._lock:
            existing = self._anchors.get(anchor.source_message_id)
            if existing is not None and existing.confidence >= anchor.confidence:
                return False
            self._anchors[anchor.source_message_id] = anchor
            return True

    def get(self, source_message_id: str) -> Optional[CorrectionAnchor]:
        with self._lock:
            return self._anchors.get(source_message_id)

    def all(self) -> List[CorrectionAnchor]:
        with self._lock:
            return list(self._anchors.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._anchors)


class DriftAnalyzer:
    """Score messages for drift and aggregate threads into profiles."""

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        *,
        sink: Optional[EventSink] = None,
        detectors: Optional[List[DriftDetector]] = None,
        anchors: Optional[AnchorIndex] = None,
    ):
        self.config = config or PipelineConfig()
        self.sink = sink if sink is not None else AuditLog()
        self.detectors = (
            detectors if detectors is not None else default_detectors(self.config.domain_terms)
        )
        self.anchors = anchors if anchors is not None else AnchorIndex()

    def scratch(self) -> "DriftAnalyzer":
        """A copy with its own deferred sink and anchor index, for one worker."""
        return DriftAnalyzer(
            self.config, sink=DeferredSink(), detectors=self.detectors, anchors=AnchorIndex()
        )

    def absorb(self, scratch: "DriftAnalyzer", analysis: ThreadAnalysis) -> ThreadAnalysis:
        """Merge the events and anchors of a kept ``scratch`` result."""
        scratch.sink.replay(self.sink)
        for anchor in analysis.anchors:
            self.anchors.add(anchor)
        analysis.anchors = [self.anchors.get(a.source_message_id) or a for a in analysis.anchors]
        return analysis

    # === Per-message ===

    def context_window(self, messages: Sequence[Message], index: int) -> List[Message]:
        """Messages within ``context_window / 2`` positions of ``messages[index]``."""
        half = self.config.half_window
        return list(messages[max(0, index - half) : index + half + 1])

    def decide_destination(
        self, confidence: float, drift: float, correction_nearby: bool
    ) -> Destination:
        """Destination rules in priority order.

        1. A nearby user correction with adequate confidence anchors the message.
        2. High confidence and low drift go to primary.
        3. Moderate confidence and drift go to the sandbox.
        4. Everything else is quarantined.
        """
        policy = self.config.destination_policy
        if correction_nearby and confidence >= policy.correction_min_confidence:
            return Destination.PRIMARY
        if confidence >= self.config.confidence_threshold and drift < policy.primary_max_drift:
            return Destination.PRIMARY
        if confidence >= policy.sandbox_min_confidence and drift < policy.sandbox_max_drift:
            return Destination.SANDBOX
        return Destination.QUARANTINE

    def analyze_message(self, message: Message, window: Sequence[Message]) -> MessageDriftAnalysis:
        """Run every detector over ``message`` and decide its destination."""
        observations = []
        for detector in self.detectors:
            observations.extend(detector(message, window))

        correction_follows = any(
            is_correction(m)
            and message.sequence < m.sequence <= message.sequence + CORRECTION_LOOKAHEAD
            for m in window
        )
        for obs in observations:
            obs.correction_available = correction_follows

        confidence = message.confidence.overall if message.confidence else 0
        drift = score_drift([o.severity for o in observations], confidence)

        policy = self.config.destination_policy
        correction_nearby = any(
            is_correction(m) and abs(m.sequence - message.sequence) <= policy.correction_span
            for m in window
        )
        destination = self.decide_destination(confidence, drift, correction_nearby)

        nearby_anchors = [
            build_anchor(m)
            for m in window
            if is_correction(m) and abs(m.sequence - message.sequence) <= policy.anchor_span
        ]

        reasons = [self._destination_reason(destination, confidence, drift, correction_nearby)]
        reasons.extend(f"{o.type.value}: {o.description}" for o in observations)

        analysis = MessageDriftAnalysis(
            message=message,
            drift_score=drift,
            destination=destination,
            observations=observations,
            nearby_anchors=nearby_anchors,
            reasons=reasons,
        )
        self.sink.record(
            "message.analyzed",
            f"Routed {destination.value} (drift {drift:.1f}, confidence {confidence})",
            stage=Stage.ANALYZER,
            severity=Severity.MEDIUM if destination == Destination.QUARANTINE else Severity.LOW,
            level=AuditLevel.COMPREHENSIVE,
            message_id=message.id,
            thread_id=message.thread_id,
            destination=destination.value,
            drift_score=drift,
            patterns=[p.value for p in analysis.pattern_types],
        )
        return analysis

    def _destination_reason(
        self, destination: Destination, confidence: float, drift: float, correction_nearby: bool
    ) -> str:
        if destination == Destination.PRIMARY and correction_nearby:
            return f"Correction anchor nearby (confidence {confidence})"
        if destination == Destination.PRIMARY:
            return f"High confidence ({confidence}) with low drift ({drift:.1f})"
        if destination == Destination.SANDBOX:
            return f"Moderate confidence ({confidence}) or drift ({drift:.1f})"
        return f"Low confidence ({confidence}) or high drift ({drift:.1f})"

    # === Per-thread ===

    def analyze_thread(self, thread: ParsedThread) -> ThreadAnalysis:
        """Analyze every message of ``thread`` and build its profile."""
        analyses = [
            self.analyze_message(message, self.context_window(thread.messages, index))
            for index, message in enumerate(thread.messages)
        ]

        anchors = []
        for message in thread.messages:
            if is_correction(message):
                anchor = build_anchor(message)
                self.anchors.add(anchor)
                anchors.append(self.anchors.get(anchor.source_message_id) or anchor)

        profile = self.build_profile(thread.id, analyses, correction_count=len(anchors))
        return ThreadAnalysis(thread=thread, profile=profile, analyses=analyses, anchors=anchors)

    def build_profile(
        self,
        thread_id: str,
        analyses: Sequence[MessageDriftAnalysis],
        correction_count: Optional[int] = None,
    ) -> ThreadDriftProfile:
        """Aggregate per-message analyses into a thread profile.

        A thread with no messages gets drift 0 and tier ``high``.
        """
        total = len(analyses)
        histogram = {p.value: 0 for p in PatternType}
        destinations = {d.value: 0 for d in Destination}

        if total == 0:
            profile = ThreadDriftProfile(
                thread_id=thread_id,
                pattern_histogram=histogram,
                destination_counts=destinations,
            )
            self._record_profile(profile)
            return profile

        for analysis in analyses:
            destinations[analysis.destination.value] += 1
            for pattern_type in analysis.pattern_types:
                histogram[pattern_type.value] += 1

        if correction_count is None:
            correction_count = sum(1 for a in analyses if is_correction(a.message))

        overall = round(mean(a.drift_score for a in analyses), 2)
        tier = self._tier(
            overall,
            destinations[Destination.PRIMARY.value] / total,
            destinations[Destination.SANDBOX.value] / total,
            destinations[Destination.QUARANTINE.value] / total,
        )
        profile = ThreadDriftProfile(
            thread_id=thread_id,
            overall_drift=overall,
            pattern_histogram=histogram,
            correction_density=round(correction_count / total, 2),
            reliability_tier=tier,
            strategy=TIER_STRATEGY[tier],
            message_count=total,
            destination_counts=destinations,
        )
        self._record_profile(profile)
        return profile

    def _tier(
        self,
        mean_drift: float,
        primary_share: float,
        sandbox_share: float,
        quarantine_share: float,
    ) -> ReliabilityTier:
        policy = self.config.tier_policy
        if quarantine_share > policy.quarantine_share:
            return ReliabilityTier.QUARANTINE
        if mean_drift > policy.low_mean_drift or primary_share < policy.low_min_primary_share:
            return ReliabilityTier.LOW
        if mean_drift > policy.medium_mean_drift or sandbox_share > policy.medium_sandbox_share:
            return ReliabilityTier.MEDIUM
        return ReliabilityTier.HIGH

    def _record_profile(self, profile: ThreadDriftProfile) -> None:
        logger.debug(
            f"Thread {profile.thread_id}: drift={profile.overall_drift} "
            f"tier={profile.reliability_tier.value} strategy={profile.strategy.value}"
        )
        self.sink.record(
            "thread.profiled",
            f"Tier {profile.reliability_tier.value}, strategy {profile.strategy.value}",
            stage=Stage.ANALYZER,
            severity=(
                Severity.HIGH
                if profile.reliability_tier == ReliabilityTier.QUARANTINE
                else Severity.LOW
            ),
            level=AuditLevel.STANDARD,
            thread_id=profile.thread_id,
            overall_drift=profile.overall_drift,
            tier=profile.reliability_tier.value,
            strategy=profile.strategy.value,
            messages=profile.message_count,
        )

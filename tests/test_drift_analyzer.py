"""Tests for per-message drift verdicts and thread profiles."""

import threading

import pytest

from strata.audit import AuditLog
from strata.config import PipelineConfig
from strata.drift.analyzer import (
    AnchorIndex,
    DriftAnalyzer,
    build_anchor,
    categorize_correction,
    extract_truth_value,
    is_correction,
    score_drift,
)
from strata.importers import parse_export
from strata.types import (
    ConfidenceScore,
    CorrectionCategory,
    Destination,
    IntegrationStrategy,
    Message,
    MessageDriftAnalysis,
    PatternObservation,
    PatternType,
    ReliabilityTier,
    Role,
)


def _msg(sequence, role="assistant", content="Plain content.", confidence=90, correction=False):
    return Message(
        id=f"m{sequence}",
        thread_id="t1",
        role=Role(role),
        content=content,
        created_at=1000.0 + sequence,
        sequence=sequence,
        confidence=ConfidenceScore(overall=confidence, has_correction=correction),
    )


def _analysis(sequence, destination, drift=0.0, patterns=()):
    return MessageDriftAnalysis(
        message=_msg(sequence),
        drift_score=drift,
        destination=destination,
        observations=[PatternObservation(type=p, severity=50, description="x") for p in patterns],
    )


def _fixed_detector(severity):
    def detect(message, window):
        if message.role != Role.ASSISTANT:
            return []
        return [
            PatternObservation(
                type=PatternType.SEMANTIC_INCONSISTENCY, severity=severity, description="stub"
            )
        ]

    return detect


class TestScoreDrift:
    def test_no_observations_means_no_drift(self):
        assert score_drift([], confidence=10) == 0.0

    def test_mean_severity_at_full_confidence(self):
        assert score_drift([40, 80], confidence=100) == 60.0

    def test_low_confidence_adjustment(self):
        assert score_drift([60], confidence=50) == 75.0

    def test_clamped(self):
        assert score_drift([100], confidence=0) == 100.0


class TestDecideDestination:
    @pytest.mark.parametrize(
        "confidence,drift,correction_nearby,expected",
        [
            (65, 90, True, Destination.PRIMARY),
            (80, 10, False, Destination.PRIMARY),
            (80, 30, False, Destination.SANDBOX),
            (60, 50, False, Destination.SANDBOX),
            (55, 20, True, Destination.SANDBOX),
            (40, 10, False, Destination.QUARANTINE),
            (90, 70, False, Destination.QUARANTINE),
        ],
    )
    def test_priority_rules(self, confidence, drift, correction_nearby, expected):
        analyzer = DriftAnalyzer()
        assert analyzer.decide_destination(confidence, drift, correction_nearby) == expected

    def test_threshold_is_configurable(self):
        analyzer = DriftAnalyzer(PipelineConfig(confidence_threshold=95))
        assert analyzer.decide_destination(90, 0, False) == Destination.SANDBOX


class TestAnalyzeMessage:
    def test_correction_outranks_drift(self):
        analyzer = DriftAnalyzer(detectors=[_fixed_detector(79.5)])
        target = _msg(1, confidence=65)
        correction = _msg(2, role="user", content="That's incorrect.", confidence=95, correction=True)
        analysis = analyzer.analyze_message(target, [_msg(0, role="user"), target, correction])
        assert analysis.drift_score == 90.0
        assert analysis.destination == Destination.PRIMARY
        assert analysis.observations[0].correction_available is True
        assert [a.source_message_id for a in analysis.nearby_anchors] == ["m2"]
        assert analysis.reasons[0].startswith("Correction anchor nearby")

    def test_distant_correction_does_not_anchor(self):
        analyzer = DriftAnalyzer(detectors=[_fixed_detector(79.5)])
        target = _msg(1, confidence=65)
        correction = _msg(4, role="user", content="That's incorrect.", correction=True)
        analysis = analyzer.analyze_message(target, [target, correction])
        assert analysis.destination == Destination.QUARANTINE

    def test_assistant_correction_is_not_an_anchor(self):
        analyzer = DriftAnalyzer(detectors=[])
        assistant_fix = _msg(2, content="Let me correct that.", correction=True)
        assert not is_correction(assistant_fix)
        analysis = analyzer.analyze_message(_msg(1), [_msg(1), assistant_fix])
        assert analysis.nearby_anchors == []

    def test_analysis_is_audited(self):
        sink = AuditLog()
        analyzer = DriftAnalyzer(sink=sink, detectors=[])
        analyzer.analyze_message(_msg(0), [_msg(0)])
        (event,) = sink.filter(event_type="message.analyzed")
        assert event.details["destination"] == "primary"


class TestContextWindow:
    def test_symmetric_window(self):
        analyzer = DriftAnalyzer()
        messages = [_msg(i) for i in range(20)]
        window = analyzer.context_window(messages, 10)
        assert [m.sequence for m in window] == list(range(5, 16))

    def test_window_at_thread_start(self):
        analyzer = DriftAnalyzer(PipelineConfig(context_window=4))
        messages = [_msg(i) for i in range(10)]
        assert [m.sequence for m in analyzer.context_window(messages, 0)] == [0, 1, 2]


class TestCorrectionAnchors:
    def test_categories(self):
        assert categorize_correction("Be more tactical here") == CorrectionCategory.STRATEGIC
        assert categorize_correction("The function is wrong") == CorrectionCategory.TECHNICAL
        assert categorize_correction("Your tone is off") == CorrectionCategory.BEHAVIORAL
        assert categorize_correction("The date was 1999") == CorrectionCategory.FACTUAL

    def test_truth_value_extraction(self):
        assert extract_truth_value("No, actually, it was Tuesday.") == "it was Tuesday."
        assert extract_truth_value("The limit should be 15.") == "15."
        assert extract_truth_value("Wrong.") == "Wrong."

    def test_build_anchor(self):
        message = _msg(3, role="user", content="That's incorrect, it should be optional.", correction=True)
        anchor = build_anchor(message)
        assert anchor.source_message_id == "m3"
        assert anchor.truth_value == "optional."
        assert anchor.confidence == 0.95


class TestAnchorIndex:
    def test_add_deduplicates(self):
        index = AnchorIndex()
        message = _msg(0, role="user", content="That's incorrect.", correction=True)
        assert index.add(build_anchor(message)) is True
        assert index.add(build_anchor(message)) is False
        assert len(index) == 1

    def test_never_weakens(self):
        index = AnchorIndex()
        strong = build_anchor(_msg(0, role="user", content="That's incorrect.", correction=True))
        weak = build_anchor(_msg(0, role="user", content="That's incorrect.", correction=True))
        weak.confidence = 0.5
        index.add(strong)
        assert index.add(weak) is False
        assert index.get("m0").confidence == 0.95

    def test_concurrent_adds(self):
        index = AnchorIndex()
        messages = [_msg(i, role="user", content="That's incorrect.", correction=True) for i in range(50)]

        def worker(chunk):
            for message in chunk:
                index.add(build_anchor(message))

        threads = [threading.Thread(target=worker, args=(messages[i::5],)) for i in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(index) == 50


class TestAnalyzeThread:
    def test_clean_thread(self, clean_conversation):
        thread = parse_export([clean_conversation]).threads[0]
        analysis = DriftAnalyzer().analyze_thread(thread)

        assert [a.drift_score for a in analysis.analyses] == [0.0] * 5
        assert {a.destination for a in analysis.analyses} == {Destination.PRIMARY}
        profile = analysis.profile
        assert profile.reliability_tier == ReliabilityTier.HIGH
        assert profile.strategy == IntegrationStrategy.FULL
        assert profile.correction_density == 0.2
        assert profile.message_count == 5
        assert len(analysis.anchors) == 1
        assert analysis.anchors[0].truth_value == "optional."

    def test_drifting_thread_is_quarantined(self, drifting_conversation):
        thread = parse_export([drifting_conversation]).threads[0]
        analysis = DriftAnalyzer().analyze_thread(thread)

        profile = analysis.profile
        assert profile.reliability_tier == ReliabilityTier.QUARANTINE
        assert profile.strategy == IntegrationStrategy.REJECT
        assert profile.destination_counts["quarantine"] == 2
        assert profile.pattern_histogram["factual_contradiction"] == 2
        assert profile.overall_drift > 35

    def test_anchors_shared_across_threads(self, clean_conversation):
        analyzer = DriftAnalyzer()
        thread = parse_export([clean_conversation]).threads[0]
        analyzer.analyze_thread(thread)
        analyzer.analyze_thread(thread)
        assert len(analyzer.anchors) == 1


class TestBuildProfile:
    def test_empty_thread(self):
        profile = DriftAnalyzer().build_profile("t0", [])
        assert profile.overall_drift == 0.0
        assert profile.reliability_tier == ReliabilityTier.HIGH
        assert profile.strategy == IntegrationStrategy.FULL

    def test_histogram_counts_messages_not_observations(self):
        analyses = [
            _analysis(0, Destination.PRIMARY, patterns=[PatternType.TONE_DRIFT, PatternType.TONE_DRIFT]),
            _analysis(1, Destination.PRIMARY, patterns=[PatternType.TONE_DRIFT]),
        ]
        profile = DriftAnalyzer().build_profile("t1", analyses)
        assert profile.pattern_histogram["tone_drift"] == 2
        assert sum(profile.pattern_histogram.values()) <= len(analyses)

    @pytest.mark.parametrize(
        "destinations,drifts,expected",
        [
            (["primary"] * 4 + ["quarantine"] * 2, [0] * 6, ReliabilityTier.QUARANTINE),
            (["primary"] * 5, [60] * 5, ReliabilityTier.LOW),
            (["primary"] * 5 + ["sandbox"] * 5, [0] * 10, ReliabilityTier.LOW),
            (["primary"] * 6 + ["sandbox"] * 4, [0] * 10, ReliabilityTier.MEDIUM),
            (["primary"] * 5, [40] * 5, ReliabilityTier.MEDIUM),
            (["primary"] * 9 + ["sandbox"], [10] * 10, ReliabilityTier.HIGH),
        ],
    )
    def test_tiers(self, destinations, drifts, expected):
        analyses = [
            _analysis(i, Destination(d), drift=drift)
            for i, (d, drift) in enumerate(zip(destinations, drifts))
        ]
        assert DriftAnalyzer().build_profile("t1", analyses).reliability_tier == expected

"""Tests for the drift detectors."""

from strata.drift.detectors import (
    default_detectors,
    detect_behavioral_shift,
    detect_semantic_inconsistency,
    detect_tone_drift,
    formality_score,
    make_factual_contradiction_detector,
    sentiment_ratio,
)
from strata.protocols import DriftDetector
from strata.types import ConfidenceScore, Message, PatternType, Role


def _msg(sequence, role, content, thread_id="t1"):
    return Message(
        id=f"{thread_id}-{sequence}",
        thread_id=thread_id,
        role=Role(role),
        content=content,
        created_at=1000.0 + sequence,
        sequence=sequence,
        confidence=ConfidenceScore(overall=90),
    )


class TestHelpers:
    def test_formality_score_neutral(self):
        assert formality_score("The module stores three records.") == 0.0

    def test_formality_score_is_clamped(self):
        assert formality_score("Furthermore, moreover, please kindly consider this.") == 1.0
        assert formality_score("yeah gonna be cool!!") == -1.0

    def test_sentiment_ratio(self):
        assert sentiment_ratio("no feelings here") == 0.5
        assert sentiment_ratio("great and excellent") == 1.0
        assert sentiment_ratio("great but terrible") == 0.5


class TestSemanticInconsistency:
    def test_transition_after_assistant_turn(self):
        earlier = _msg(1, "assistant", "The design has two layers.")
        current = _msg(3, "assistant", "By the way, we should rebuild everything.")
        (obs,) = detect_semantic_inconsistency(current, [earlier, current])
        assert obs.type == PatternType.SEMANTIC_INCONSISTENCY
        assert obs.severity == 60

    def test_transition_without_history_is_ignored(self):
        current = _msg(0, "assistant", "By the way, we should rebuild everything.")
        assert detect_semantic_inconsistency(current, [current]) == []

    def test_repetition(self):
        current = _msg(0, "assistant", "the same twenty chars! " * 3)
        (obs,) = detect_semantic_inconsistency(current, [current])
        assert obs.severity == 70

    def test_user_messages_are_skipped(self):
        earlier = _msg(0, "assistant", "Fine.")
        current = _msg(1, "user", "By the way, something completely different.")
        assert detect_semantic_inconsistency(current, [earlier, current]) == []


class TestBehavioralShift:
    def test_limitation_phrasing(self):
        current = _msg(0, "assistant", "I apologize, sorry, I made a mistake, sorry again.")
        (obs,) = detect_behavioral_shift(current, [current])
        assert obs.type == PatternType.BEHAVIORAL_SHIFT
        assert obs.severity == 50

    def test_two_limitation_phrases_tolerated(self):
        current = _msg(0, "assistant", "Sorry, I cannot open that file.")
        assert detect_behavioral_shift(current, [current]) == []

    def test_formality_shift(self):
        earlier = _msg(1, "assistant", "The module stores three records.")
        current = _msg(3, "assistant", "Furthermore, moreover, please kindly consider this.")
        (obs,) = detect_behavioral_shift(current, [earlier, current])
        assert obs.severity == 40


class TestFactualContradiction:
    def test_overconfidence(self):
        detect = make_factual_contradiction_detector()
        current = _msg(0, "assistant", "It definitely, absolutely, certainly works.")
        (obs,) = detect(current, [current])
        assert obs.type == PatternType.FACTUAL_CONTRADICTION
        assert obs.severity == 45

    def test_two_overconfident_phrases_tolerated(self):
        detect = make_factual_contradiction_detector()
        current = _msg(0, "assistant", "It definitely, absolutely works.")
        assert detect(current, [current]) == []

    def test_impossible_claim_needs_domain_vocabulary(self):
        detect = make_factual_contradiction_detector()
        about_system = _msg(0, "assistant", "The framework is flawless.")
        elsewhere = _msg(1, "assistant", "The cake is flawless.")
        (obs,) = detect(about_system, [about_system])
        assert obs.severity == 80
        assert detect(elsewhere, [elsewhere]) == []


class TestToneDrift:
    def test_sentiment_reversal(self):
        window = [
            _msg(0, "user", "This is great."),
            _msg(2, "user", "That was excellent."),
            _msg(4, "user", "This is terrible."),
        ]
        (obs,) = detect_tone_drift(window[2], window)
        assert obs.type == PatternType.TONE_DRIFT
        assert obs.severity == 100

    def test_needs_two_earlier_messages(self):
        window = [_msg(0, "user", "This is great."), _msg(2, "user", "This is terrible.")]
        assert detect_tone_drift(window[1], window) == []

    def test_other_role_is_not_baseline(self):
        window = [
            _msg(0, "assistant", "This is great."),
            _msg(1, "assistant", "That was excellent."),
            _msg(2, "user", "This is terrible."),
        ]
        assert detect_tone_drift(window[2], window) == []


class TestRegistry:
    def test_default_detectors_order(self):
        detectors = default_detectors()
        assert len(detectors) == 4
        assert detectors[0] is detect_semantic_inconsistency
        assert detectors[-1] is detect_tone_drift

    def test_registry_entries_are_drift_detectors(self):
        for detector in default_detectors(["kernel"]):
            assert isinstance(detector, DriftDetector)
            assert detector.__name__

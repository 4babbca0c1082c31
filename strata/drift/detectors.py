"""Drift detectors.

Each detector is a pure function ``(message, window) -> [PatternObservation]``.
``window`` holds the surrounding messages from the same thread in sequence
order (it may include ``message`` itself). Detectors never raise on parsed
input; a detector with nothing to report returns an empty list.

The analyzer iterates whatever list it is given, so a detector can be
replaced (for example by a trained classifier) without touching the
aggregation logic.
"""

from statistics import mean
from typing import List, Optional, Pattern, Sequence

from strata.config import DEFAULT_DOMAIN_TERMS
from strata.patterns import (
    AI_LIMITATION_PATTERNS,
    FORMAL_PATTERNS,
    IMPOSSIBLE_CLAIM_PATTERNS,
    INFORMAL_PATTERNS,
    NEGATIVE_WORDS,
    OVERCONFIDENCE_PATTERNS,
    POSITIVE_WORDS,
    REPETITION_PATTERN,
    TRANSITION_PATTERNS,
    WORD,
    compile_terms,
    count_occurrences,
)
from strata.protocols import DriftDetector
from strata.types import Message, PatternObservation, PatternType, Role
from strata.utils import clamp

EVIDENCE_CHARS = 200

TRANSITION_SEVERITY = 60
REPETITION_SEVERITY = 70
LIMITATION_SEVERITY = 50
LIMITATION_MAX_OCCURRENCES = 2
FORMALITY_SEVERITY = 40
FORMALITY_DIVERGENCE = 0.4
OVERCONFIDENCE_WEIGHT = 15
OVERCONFIDENCE_THRESHOLD = 30
IMPOSSIBLE_CLAIM_SEVERITY = 80
TONE_DIVERGENCE = 0.3

_POSITIVE = compile_terms(POSITIVE_WORDS)
_NEGATIVE = compile_terms(NEGATIVE_WORDS)


def _previous(message: Message, window: Sequence[Message], same_role: bool = True) -> List[Message]:
    return [
        m
        for m in window
        if m.sequence < message.sequence and (not same_role or m.role == message.role)
    ]


def formality_score(text: str) -> float:
    """Formal minus informal register markers per 100 words, in [-1, 1]."""
    formal = count_occurrences(FORMAL_PATTERNS, text)
    informal = count_occurrences(INFORMAL_PATTERNS, text)
    words = len(WORD.findall(text))
    return clamp((formal - informal) / max(words / 100, 1), -1.0, 1.0)


def sentiment_ratio(text: str) -> float:
    """Share of positive words among sentiment words; 0.5 when there are none."""
    positive = len(_POSITIVE.findall(text))
    negative = len(_NEGATIVE.findall(text))
    if positive + negative == 0:
        return 0.5
    return positive / (positive + negative)


def detect_semantic_inconsistency(
    message: Message, window: Sequence[Message]
) -> List[PatternObservation]:
    """Abrupt transitions after earlier assistant turns, and degenerate repetition."""
    if message.role != Role.ASSISTANT:
        return []

    observations: List[PatternObservation] = []
    earlier = _previous(message, window)[-3:]
    if earlier:
        for pattern in TRANSITION_PATTERNS:
            match = pattern.search(message.content)
            if match:
                observations.append(
                    PatternObservation(
                        type=PatternType.SEMANTIC_INCONSISTENCY,
                        severity=TRANSITION_SEVERITY,
                        description=f"Abrupt transition: '{match.group(0)}'",
                        evidence=message.content[:EVIDENCE_CHARS],
                    )
                )

    if REPETITION_PATTERN.search(message.content):
        observations.append(
            PatternObservation(
                type=PatternType.SEMANTIC_INCONSISTENCY,
                severity=REPETITION_SEVERITY,
                description="Repeated text pattern",
                evidence=message.content[:EVIDENCE_CHARS],
            )
        )
    return observations


def detect_behavioral_shift(message: Message, window: Sequence[Message]) -> List[PatternObservation]:
    """AI-limitation phrasing and register (formality) shifts."""
    if message.role != Role.ASSISTANT:
        return []

    observations: List[PatternObservation] = []
    limitations = count_occurrences(AI_LIMITATION_PATTERNS, message.content)
    if limitations > LIMITATION_MAX_OCCURRENCES:
        observations.append(
            PatternObservation(
                type=PatternType.BEHAVIORAL_SHIFT,
                severity=LIMITATION_SEVERITY,
                description=f"Self-referential limitation phrasing ({limitations} occurrences)",
                evidence=message.content[:EVIDENCE_CHARS],
            )
        )

    earlier = _previous(message, window)[-3:]
    if earlier:
        current = formality_score(message.content)
        baseline = mean(formality_score(m.content) for m in earlier)
        if abs(current - baseline) > FORMALITY_DIVERGENCE:
            observations.append(
                PatternObservation(
                    type=PatternType.BEHAVIORAL_SHIFT,
                    severity=FORMALITY_SEVERITY,
                    description=f"Formality shift {baseline:.2f} -> {current:.2f}",
                    evidence=message.content[:EVIDENCE_CHARS],
                )
            )
    return observations


def make_factual_contradiction_detector(domain: Optional[Pattern[str]] = None) -> DriftDetector:
    """Build the factual detector bound to a domain vocabulary.

    Impossible claims only count when the message also uses domain
    vocabulary, i.e. when the claim is about the system itself.
    """
    domain = domain or compile_terms(DEFAULT_DOMAIN_TERMS)

    def detect_factual_contradiction(
        message: Message, window: Sequence[Message]
    ) -> List[PatternObservation]:
        if message.role != Role.ASSISTANT:
            return []

        observations: List[PatternObservation] = []
        overconfidence = OVERCONFIDENCE_WEIGHT * count_occurrences(
            OVERCONFIDENCE_PATTERNS, message.content
        )
        if overconfidence > OVERCONFIDENCE_THRESHOLD:
            observations.append(
                PatternObservation(
                    type=PatternType.FACTUAL_CONTRADICTION,
                    severity=min(100, overconfidence),
                    description=f"Overconfident phrasing (score {overconfidence})",
                    evidence=message.content[:EVIDENCE_CHARS],
                )
            )

        if domain.search(message.content):
            for pattern in IMPOSSIBLE_CLAIM_PATTERNS:
                match = pattern.search(message.content)
                if match:
                    observations.append(
                        PatternObservation(
                            type=PatternType.FACTUAL_CONTRADICTION,
                            severity=IMPOSSIBLE_CLAIM_SEVERITY,
                            description=f"Impossible claim about the system: '{match.group(0)}'",
                            evidence=message.content[:EVIDENCE_CHARS],
                        )
                    )
        return observations

    return detect_factual_contradiction


def detect_tone_drift(message: Message, window: Sequence[Message]) -> List[PatternObservation]:
    """Sentiment ratio diverging from the last five same-role messages."""
    earlier = _previous(message, window)[-5:]
    if len(earlier) < 2:
        return []

    current = sentiment_ratio(message.content)
    baseline = mean(sentiment_ratio(m.content) for m in earlier)
    difference = abs(current - baseline)
    if difference <= TONE_DIVERGENCE:
        return []
    return [
        PatternObservation(
            type=PatternType.TONE_DRIFT,
            severity=int(round(difference * 100)),
            description=f"Tone shift {baseline:.2f} -> {current:.2f}",
            evidence=message.content[:EVIDENCE_CHARS],
        )
    ]


def default_detectors(domain_terms: Sequence[str] = DEFAULT_DOMAIN_TERMS) -> List[DriftDetector]:
    """The standard detector registry, in evaluation order."""
    return [
        detect_semantic_inconsistency,
        detect_behavioral_shift,
        make_factual_contradiction_detector(compile_terms(domain_terms)),
        detect_tone_drift,
    ]

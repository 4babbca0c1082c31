"""Parse-time message scoring: confidence and drift markers.

Scores are heuristic. They reward well-formed, hedged, domain-grounded text
and penalize unverifiable memory claims and absolute phrasing. Every
function here is pure.
"""

from typing import List, Optional, Pattern

from strata.config import DEFAULT_DOMAIN_TERMS
from strata.patterns import (
    ABSOLUTE_PHRASING,
    ABSOLUTE_TECHNICAL_CLAIM,
    CITATION_CLAIM,
    CORRECTION_PATTERNS,
    HALLUCINATION_PATTERNS,
    OPERATIONAL_VOCABULARY,
    SEMANTIC_SHIFT_PATTERNS,
    SENTENCE_SPLIT,
    compile_terms,
    count_matching,
    has_correction,
)
from strata.types import MARKER_CONFIDENCE, ConfidenceScore, DriftMarker, MarkerType, Role
from strata.utils import clamp

# Weights of the overall blend
BASE_WEIGHT = 0.4
SEMANTIC_WEIGHT = 0.2
FACTUAL_WEIGHT = 0.2
TONE_WEIGHT = 0.1
TECHNICAL_WEIGHT = 0.1

HALLUCINATION_PENALTY = 20
MAX_HALLUCINATION_PENALTY = 60

SHIFT_CONTEXT_RADIUS = 50
CORRECTION_CONTEXT_CHARS = 100

_DEFAULT_DOMAIN = compile_terms(DEFAULT_DOMAIN_TERMS)


def semantic_consistency(content: str) -> int:
    """Score sentence structure: degenerate or extreme-length text scores lower."""
    if len(content) < 10:
        return 50
    if len(content) > 5000:
        return 70
    sentences = [s for s in SENTENCE_SPLIT.split(content) if s.strip()]
    if not sentences:
        return 30
    avg_length = sum(len(s) for s in sentences) / len(sentences)
    if avg_length < 10 or avg_length > 200:
        return 60
    return 85


def factual_accuracy(content: str, role: Role) -> int:
    """User text is treated as ground truth; other roles lose points for absolutes."""
    if role == Role.USER:
        return 95
    score = 80
    if ABSOLUTE_PHRASING.search(content):
        score -= 15
    if CITATION_CLAIM.search(content):
        score -= 10
    return max(30, score)


def tone_consistency(content: str, role: Role, domain: Pattern[str] = _DEFAULT_DOMAIN) -> int:
    if role != Role.USER:
        return 75
    score = 70
    if OPERATIONAL_VOCABULARY.search(content):
        score += 15
    if domain.search(content):
        score += 15
    return min(100, score)


def technical_coherence(content: str, domain: Pattern[str] = _DEFAULT_DOMAIN) -> int:
    score = 80
    score += min(20, len(domain.findall(content)) * 5)
    if ABSOLUTE_TECHNICAL_CLAIM.search(content):
        score -= 20
    return int(clamp(score, 40, 100))


def compute_confidence(
    content: str, role: Role, domain: Optional[Pattern[str]] = None
) -> ConfidenceScore:
    """Compute the confidence score for one message.

    The hallucination-adjusted base starts at 100 and loses 20 per matched
    indicator group for assistant messages, at most 60. The overall score
    blends base 40%, semantic 20%, factual 20%, tone 10%, technical 10%.

    Args:
        content: Message text
        role: Author role
        domain: Compiled domain vocabulary (defaults to the built-in terms)

    Returns:
        ConfidenceScore with every field in [0, 100]
    """
    domain = domain or _DEFAULT_DOMAIN
    base = 100
    if role == Role.ASSISTANT:
        penalty = HALLUCINATION_PENALTY * count_matching(HALLUCINATION_PATTERNS, content)
        base -= min(penalty, MAX_HALLUCINATION_PENALTY)

    semantic = semantic_consistency(content)
    factual = factual_accuracy(content, role)
    tone = tone_consistency(content, role, domain)
    technical = technical_coherence(content, domain)

    overall = clamp(
        base * BASE_WEIGHT
        + semantic * SEMANTIC_WEIGHT
        + factual * FACTUAL_WEIGHT
        + tone * TONE_WEIGHT
        + technical * TECHNICAL_WEIGHT,
        0,
        100,
    )
    return ConfidenceScore(
        overall=int(round(overall)),
        has_correction=has_correction(content),
        semantic_consistency=semantic,
        factual_accuracy=factual,
        tone_consistency=tone,
        technical_coherence=technical,
    )


def detect_markers(content: str) -> List[DriftMarker]:
    """Find semantic-shift and correction markers in ``content``.

    Every semantic-shift match yields a marker at its offset with the
    surrounding text as context. Correction phrasing anywhere in the text
    yields one correction marker anchored at offset 0.
    """
    markers: List[DriftMarker] = []
    for pattern in SEMANTIC_SHIFT_PATTERNS:
        for match in pattern.finditer(content):
            start = match.start()
            markers.append(
                DriftMarker(
                    type=MarkerType.SEMANTIC_SHIFT,
                    position=start,
                    context=content[max(0, start - SHIFT_CONTEXT_RADIUS) : start + SHIFT_CONTEXT_RADIUS],
                    confidence=MARKER_CONFIDENCE[MarkerType.SEMANTIC_SHIFT],
                )
            )
    if any(p.search(content) for p in CORRECTION_PATTERNS):
        markers.append(
            DriftMarker(
                type=MarkerType.CREATOR_CORRECTION,
                position=0,
                context=content[:CORRECTION_CONTEXT_CHARS],
                confidence=MARKER_CONFIDENCE[MarkerType.CREATOR_CORRECTION],
            )
        )
    return markers

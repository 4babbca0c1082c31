"""Phrase lexicons used by the parser and the drift detectors.

All patterns are compiled case-insensitive. Each tuple groups related
phrasings; most scorers count how many groups match, not how many times.
"""

import re
from typing import Iterable, Pattern, Tuple

_I = re.IGNORECASE

# Unverifiable memory claims and overconfident absolutes (assistant confidence penalty)
HALLUCINATION_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b(i remember|i recall|based on my previous|from our last)\b", _I),
    re.compile(r"\b(as i mentioned before|continuing from|building on what)\b", _I),
    re.compile(r"\b(definitive|absolutely certain|guaranteed|100% sure)\b", _I),
    re.compile(r"\b(never fails|always works|perfect solution|ultimate answer)\b", _I),
)

# Explicit disagreement or correction language
CORRECTION_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b(that'?s? incorrect|you'?re wrong|that'?s not right)\b", _I),
    re.compile(r"\b(pause|wait|stop|hold on)[.,\s]+(that'?s not|that'?s incorrect)", _I),
    re.compile(r"\b(let me correct|actually[,\s]+|no[,\s]+that'?s)", _I),
    re.compile(r"\b(fix that|correct that|revise that|change that)\b", _I),
    re.compile(r"\b(false|inaccurate|mistaken|misunderstood)\b", _I),
)

# Abrupt-transition language (parse-time markers)
SEMANTIC_SHIFT_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b(suddenly|unexpectedly|out of nowhere|randomly)\b", _I),
    re.compile(r"\b(completely different|total change|opposite direction)\b", _I),
    re.compile(r"\b(ignore previous|forget what|disregard that)\b", _I),
)

# Abrupt-transition language relative to earlier assistant turns (detector)
TRANSITION_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b(suddenly|unexpectedly|out of nowhere|randomly|by the way)\b", _I),
    re.compile(r"\b(completely different|total change|opposite approach|new direction)\b", _I),
    re.compile(r"\b(ignore previous|forget what|disregard that|never mind)\b", _I),
)

# A run of 20+ characters repeated at least three times in a row
REPETITION_PATTERN: Pattern[str] = re.compile(r"(.{20,}?)\1{2,}", re.DOTALL)

# Self-referential limitation and apology phrasing
AI_LIMITATION_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b(as an AI|I am an AI|I'm just an AI|I don't have feelings)\b", _I),
    re.compile(r"\b(I cannot|I'm not able to|that's beyond my capabilities)\b", _I),
    re.compile(r"\b(I apologize|sorry|I made a mistake)\b", _I),
)

FORMAL_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b(furthermore|moreover|additionally|consequently)\b", _I),
    re.compile(r"\b(please|kindly|respectfully|sincerely)\b", _I),
    re.compile(r"\b(shall|ought|would|should)\b", _I),
)

INFORMAL_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b(gonna|wanna|gotta|yeah|nah)\b", _I),
    re.compile(r"\b(cool|awesome|sweet|nice)\b", _I),
    re.compile(r"[!]{2,}|[?]{2,}"),
)

OVERCONFIDENCE_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b(definitely|absolutely|certainly|guaranteed|100% sure|never fails)\b", _I),
    re.compile(r"\b(always works|perfect solution|ultimate answer|best possible)\b", _I),
    re.compile(r"\b(impossible to|can never|will never|absolutely cannot)\b", _I),
)

IMPOSSIBLE_CLAIM_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\b(perfect|flawless|bug-free|error-proof|100% accurate)\b", _I),
    re.compile(r"\b(never crashes|always stable|impossible to break)\b", _I),
    re.compile(r"\b(infinite memory|unlimited processing|instant response)\b", _I),
)

# Factual-accuracy penalties for assistant messages
ABSOLUTE_PHRASING = re.compile(
    r"\b(definitely|absolutely|certainly|guaranteed|never fails)\b", _I
)
CITATION_CLAIM = re.compile(r"\b(according to|studies show|research indicates)\b", _I)

# Technical-coherence penalty
ABSOLUTE_TECHNICAL_CLAIM = re.compile(
    r"\b(perfectly|100% accurate|never fails|impossible to break)\b", _I
)

# Tone boosters for user messages
OPERATIONAL_VOCABULARY = re.compile(
    r"\b(tactical|strategic|efficient|precise|execute|implement)\b", _I
)

POSITIVE_WORDS: Tuple[str, ...] = ("excellent", "great", "perfect", "amazing", "wonderful", "fantastic")
NEGATIVE_WORDS: Tuple[str, ...] = ("terrible", "awful", "horrible", "bad", "wrong", "failed")

# Correction anchor buckets, checked in order; factual is the fallback
TECHNICAL_BUCKET = re.compile(r"\b(typescript|code|implementation|function)\b", _I)
BEHAVIORAL_BUCKET = re.compile(r"\b(personality|behavior|response|tone)\b", _I)

TRUTH_VALUE_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(r"\bactually[,\s]+(.{1,100})", _I | re.DOTALL),
    re.compile(r"\bcorrect answer is[:\s]+(.{1,100})", _I | re.DOTALL),
    re.compile(r"\bshould be[:\s]+(.{1,100})", _I | re.DOTALL),
)

SENTENCE_SPLIT = re.compile(r"[.!?]+")
WORD = re.compile(r"\b\w+\b")


def compile_terms(terms: Iterable[str]) -> Pattern[str]:
    """Compile a word-boundary alternation over ``terms``."""
    escaped = sorted({re.escape(t.strip()) for t in terms if t and t.strip()}, key=len, reverse=True)
    if not escaped:
        # Matches nothing
        return re.compile(r"(?!x)x")
    return re.compile(r"\b(" + "|".join(escaped) + r")\b", _I)


def count_matching(patterns: Iterable[Pattern[str]], text: str) -> int:
    """Number of pattern groups with at least one match in ``text``."""
    return sum(1 for p in patterns if p.search(text))


def count_occurrences(patterns: Iterable[Pattern[str]], text: str) -> int:
    """Total number of matches across all patterns."""
    return sum(len(p.findall(text)) for p in patterns)


def has_correction(text: str) -> bool:
    return any(p.search(text) for p in CORRECTION_PATTERNS)

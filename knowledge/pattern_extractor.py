"""
Pattern Extractor - Behavioral Patterns from Reviewed Responses
================================================================

Compares model drafts with the text reviewers finally approved and
derives LearningPattern candidates:
- Vocabulary: TF-IDF top terms of approved text (scikit-learn)
- Structure: paragraph, list, code-block and heading habits
- Emphasis: bold, italic and quote markers
- Tone: politeness-marker formality score and its shift under editing
- Length: typical response length and the length shift under editing

Descriptions are bucketed so that re-observing the same behavior yields
the same description, and therefore the same pattern id.
"""

import re
from dataclasses import dataclass, field
from statistics import mean
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
from loguru import logger
from sklearn.feature_extraction.text import TfidfVectorizer

from config.constants import BATCH_LIMITS, STRUCTURE_THRESHOLDS
from core.enums import PatternType
from core.models import ChatTurn

EXAMPLE_PREVIEW_CHARS = 300
TOP_VOCABULARY_TERMS = 10

POLITE_MARKERS = (
    "です",
    "ます",
    "ございます",
    "いただ",
    "おり",
    "されて",
    "please",
    "thank you",
    "kindly",
    "would you",
)
CASUAL_MARKERS = ("だよ", "だね", "じゃん", "って", "gonna", "yeah", "hey")

_MARKDOWN_NOISE = re.compile(r"[*_`~#>\[\]()]")
_WORD_SPLIT = re.compile(r"[\s、。！？,.!?]+")
_LIST_LINE = re.compile(r"^(?:[-*]\s|\d+\.\s)", re.MULTILINE)
_HEADING_LINE = re.compile(r"^#{1,6}\s", re.MULTILINE)
_BOLD = re.compile(r"\*\*[^*\n]+\*\*")
_ITALIC = re.compile(r"(?<!\*)\*(?!\*)[^*\n]+(?<!\*)\*(?!\*)")
_QUOTE_LINE = re.compile(r"^>\s", re.MULTILINE)


@dataclass(frozen=True)
class TextPair:
    """A model draft and the text that was finally approved."""

    original: str
    edited: str
    source_id: str = ""
    category: Optional[str] = None

    @property
    def was_edited(self) -> bool:
        return self.original != self.edited

    @classmethod
    def from_turn(cls, turn: ChatTurn) -> "TextPair":
        return cls(
            original=turn.draft, edited=turn.response, source_id=turn.id, category=turn.category
        )


@dataclass(frozen=True)
class PatternCandidate:
    type: PatternType
    description: str
    confidence: float
    examples: List[str] = field(default_factory=list)


# =========================================================================
# SCORING HELPERS
# =========================================================================


def tokenize(text: str) -> List[str]:
    """Markdown-stripped, lower-cased tokens longer than one character."""
    cleaned = _MARKDOWN_NOISE.sub(" ", text)
    return [word.lower() for word in _WORD_SPLIT.split(cleaned) if len(word) > 1]


def pattern_confidence(feature_count: int, sample_size: int) -> float:
    """Features and sample size each contribute up to half of the score."""
    features = feature_count / 10 * 50
    sample = min(sample_size / 20 * 50, 50)
    return float(min(100, round(features + sample)))


def formality_score(texts: Sequence[str]) -> int:
    polite = sum(1 for text in texts for marker in POLITE_MARKERS if marker in text.lower())
    casual = sum(1 for text in texts for marker in CASUAL_MARKERS if marker in text.lower())
    return round(polite / (polite + casual + 1) * 100)


def _formality_label(score: int) -> str:
    if score > 70:
        return "formal"
    if score > 40:
        return "business"
    return "casual"


def _length_bucket(length: float) -> str:
    if length < 200:
        return "short (<200 chars)"
    if length < 500:
        return "medium (200-499 chars)"
    if length < 1000:
        return "long (500-999 chars)"
    return "very long (1000+ chars)"


def _examples(pairs: Sequence[TextPair]) -> List[str]:
    return [pair.edited[:EXAMPLE_PREVIEW_CHARS] for pair in pairs[:3]]


# =========================================================================
# EXTRACTOR
# =========================================================================


class PatternExtractor:
    """
    Runs the five analyzers over (original, edited) pairs.

    Each analyzer is independent and returns zero or more candidates.
    ``min_pairs`` gates every analyzer: batch runs use the default of 3,
    single-edit events pass 1.
    """

    def __init__(self, min_pairs: int = BATCH_LIMITS.MIN_PAIRS_PER_ANALYZER):
        self.min_pairs = min_pairs
        self.analyzers: Dict[PatternType, Callable[[Sequence[TextPair]], List[PatternCandidate]]] = {
            PatternType.VOCABULARY: self.analyze_vocabulary,
            PatternType.STRUCTURE: self.analyze_structure,
            PatternType.EMPHASIS: self.analyze_emphasis,
            PatternType.TONE: self.analyze_tone,
            PatternType.LENGTH: self.analyze_length,
        }

    def run_analyzer(
        self, pattern_type: PatternType, pairs: Sequence[TextPair]
    ) -> List[PatternCandidate]:
        if len(pairs) < self.min_pairs:
            return []
        return self.analyzers[pattern_type](pairs)

    def extract(self, pairs: Sequence[TextPair]) -> List[PatternCandidate]:
        """
        Run every analyzer; exceptions propagate to the caller.

        Args:
            pairs: Approved (original, edited) text pairs of one partition

        Returns:
            Candidates in analyzer order
        """
        candidates: List[PatternCandidate] = []
        for pattern_type in self.analyzers:
            candidates.extend(self.run_analyzer(pattern_type, pairs))
        return candidates

    # =====================================================================
    # ANALYZERS
    # =====================================================================

    def analyze_vocabulary(self, pairs: Sequence[TextPair]) -> List[PatternCandidate]:
        """Top TF-IDF terms across approved texts, ties broken alphabetically."""
        documents = [pair.edited for pair in pairs]
        vectorizer = TfidfVectorizer(tokenizer=tokenize, token_pattern=None, lowercase=False)
        try:
            matrix = vectorizer.fit_transform(documents)
        except ValueError:
            # Every document tokenized to nothing
            return []

        scores = np.asarray(matrix.sum(axis=0)).ravel()
        terms = vectorizer.get_feature_names_out()
        ranked = sorted(zip(terms, scores), key=lambda item: (-round(float(item[1]), 9), item[0]))
        top_terms = [term for term, score in ranked[:TOP_VOCABULARY_TERMS] if score > 0]
        if not top_terms:
            return []

        logger.debug(f"Vocabulary analyzer found {len(top_terms)} terms over {len(pairs)} pairs")
        return [
            PatternCandidate(
                type=PatternType.VOCABULARY,
                description=f"Key vocabulary: {', '.join(sorted(top_terms))}",
                confidence=pattern_confidence(len(top_terms), len(pairs)),
                examples=_examples(pairs),
            )
        ]

    def analyze_structure(self, pairs: Sequence[TextPair]) -> List[PatternCandidate]:
        total = len(pairs)
        texts = [pair.edited for pair in pairs]

        multi_paragraph = sum(
            1 for text in texts if len([p for p in text.split("\n\n") if p.strip()]) > 1
        )
        lists = sum(1 for text in texts if _LIST_LINE.search(text))
        code_blocks = sum(1 for text in texts if "```" in text)
        headings = sum(1 for text in texts if _HEADING_LINE.search(text))

        features = []
        if multi_paragraph / total > STRUCTURE_THRESHOLDS.PARAGRAPHS:
            features.append("multi-paragraph")
        if lists / total > STRUCTURE_THRESHOLDS.LISTS:
            features.append("lists")
        if code_blocks / total > STRUCTURE_THRESHOLDS.CODE_BLOCKS:
            features.append("code blocks")
        if headings / total > STRUCTURE_THRESHOLDS.HEADINGS:
            features.append("headings")

        if not features:
            return []

        return [
            PatternCandidate(
                type=PatternType.STRUCTURE,
                description=f"Structure: {', '.join(features)}",
                confidence=pattern_confidence(len(features), total),
                examples=_examples(pairs),
            )
        ]

    def analyze_emphasis(self, pairs: Sequence[TextPair]) -> List[PatternCandidate]:
        texts = [pair.edited for pair in pairs]
        features = []
        if any(_BOLD.search(text) for text in texts):
            features.append("bold")
        if any(_ITALIC.search(_BOLD.sub("", text)) for text in texts):
            features.append("italic")
        if any(_QUOTE_LINE.search(text) for text in texts):
            features.append("quote")

        if not features:
            return []

        return [
            PatternCandidate(
                type=PatternType.EMPHASIS,
                description=f"Emphasis: {', '.join(features)}",
                confidence=pattern_confidence(len(features), len(pairs)),
                examples=_examples(pairs),
            )
        ]

    def analyze_tone(self, pairs: Sequence[TextPair]) -> List[PatternCandidate]:
        edited = [pair.edited for pair in pairs]
        score = formality_score(edited)
        description = f"Tone: {_formality_label(score)}"

        changed = [pair for pair in pairs if pair.was_edited]
        if changed:
            shift = formality_score([p.edited for p in changed]) - formality_score(
                [p.original for p in changed]
            )
            if shift >= 10:
                description += ", edits raise formality"
            elif shift <= -10:
                description += ", edits lower formality"

        markers_seen = {
            marker
            for text in edited
            for marker in POLITE_MARKERS + CASUAL_MARKERS
            if marker in text.lower()
        }

        return [
            PatternCandidate(
                type=PatternType.TONE,
                description=description,
                confidence=pattern_confidence(len(markers_seen), len(pairs)),
                examples=_examples(pairs),
            )
        ]

    def analyze_length(self, pairs: Sequence[TextPair]) -> List[PatternCandidate]:
        average = mean(len(pair.edited) for pair in pairs)
        description = f"Length: {_length_bucket(average)}"
        features = 1

        ratios = [len(p.edited) / len(p.original) for p in pairs if p.was_edited and p.original]
        if ratios:
            ratio = mean(ratios)
            if ratio > 1.1:
                description += ", edits lengthen drafts"
                features += 1
            elif ratio < 0.9:
                description += ", edits shorten drafts"
                features += 1

        return [
            PatternCandidate(
                type=PatternType.LENGTH,
                description=description,
                confidence=pattern_confidence(features, len(pairs)),
                examples=_examples(pairs),
            )
        ]

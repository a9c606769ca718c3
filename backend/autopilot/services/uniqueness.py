"""
Uniqueness validator: lexical overlap between generated text and its sources.

score = 1 - (sum over sources of |generated ∩ source|) / (sum of |source|)

Word sets are lowercased whitespace tokens longer than 3 chars. No source
words at all scores 1.0. The result is clamped to [0, 1].
"""
from __future__ import annotations

from typing import Iterable

from autopilot.errors import UniquenessError
from autopilot.schemas import SourceDocument


def _word_set(text: str) -> set[str]:
    return {word for word in text.lower().split() if len(word) > 3}


def uniqueness_score(generated: str, sources: Iterable[SourceDocument]) -> float:
    generated_words = _word_set(generated)
    total_overlap = 0
    total_source_words = 0
    for source in sources:
        source_words = _word_set(source.content)
        total_overlap += len(generated_words & source_words)
        total_source_words += len(source_words)

    if total_source_words == 0:
        return 1.0
    return max(0.0, min(1.0, 1 - total_overlap / total_source_words))


def ensure_unique(generated: str, sources: Iterable[SourceDocument], threshold: float) -> float:
    """Return the score, or raise UniquenessError when it is below threshold."""
    score = uniqueness_score(generated, sources)
    if score < threshold:
        raise UniquenessError(score, threshold)
    return score

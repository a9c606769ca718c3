"""
Text analysis over crawled sources: themes, practices, insights, topic.

All extractors are pure functions over SourceDocument lists. Word frequency
ties keep first-seen order.
"""
from __future__ import annotations

import math
import re
from collections import Counter
from typing import Iterable

from autopilot.schemas import BrandVoice, SourceDocument

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "is", "are", "was", "were", "be", "been", "have",
    "has", "had", "do", "does", "did", "will", "would", "could", "should",
    "that", "this", "these", "those", "i", "you", "he", "she", "it", "we", "they",
})

BEST_PRACTICE_INDICATORS = ("best practice", "should", "recommended", "important to", "key to")

WORDS_PER_MINUTE = 200
DEFAULT_TOPIC = "Content Topic"

_SENTENCE_SPLIT = re.compile(r"[.!?]+")


def is_stop_word(word: str) -> bool:
    return word.lower() in STOP_WORDS


def _top_words(text: str, min_len: int, limit: int) -> list[str]:
    freq = Counter(
        word for word in text.lower().split()
        if len(word) > min_len and not is_stop_word(word)
    )
    return [word for word, _ in freq.most_common(limit)]


def extract_themes(sources: Iterable[SourceDocument], limit: int = 10) -> list[str]:
    """Most frequent words longer than 4 chars across all source bodies."""
    return _top_words(" ".join(s.content for s in sources), 4, limit)


def extract_best_practices(sources: Iterable[SourceDocument], limit: int = 10) -> list[str]:
    practices: list[str] = []
    for source in sources:
        for sentence in _SENTENCE_SPLIT.split(source.content):
            lower = sentence.lower()
            if any(ind in lower for ind in BEST_PRACTICE_INDICATORS):
                practices.append(sentence.strip())
    return practices[:limit]


def extract_key_insights(sources: Iterable[SourceDocument], limit: int = 10) -> list[str]:
    """First three sentences of each source, kept when longer than 50 chars."""
    insights: list[str] = []
    for source in sources:
        for sentence in _SENTENCE_SPLIT.split(source.content)[:3]:
            sentence = sentence.strip()
            if len(sentence) > 50:
                insights.append(sentence)
    return insights[:limit]


def extract_main_topic(sources: Iterable[SourceDocument]) -> str:
    titles = [s.title for s in sources if s.title]
    if not titles:
        return DEFAULT_TOPIC
    return " ".join(_top_words(" ".join(titles), 3, 3)) or DEFAULT_TOPIC


def extract_keywords(sources: Iterable[SourceDocument]) -> list[str]:
    return extract_themes(sources)[:5]


def count_words(text: str) -> int:
    return len(text.split())


def reading_time_minutes(text: str) -> int:
    return math.ceil(count_words(text) / WORDS_PER_MINUTE)


def build_context_prompt(
    sources: list[SourceDocument],
    brand_voice: BrandVoice,
    target_audience: str,
) -> str:
    themes = extract_themes(sources)
    practices = extract_best_practices(sources)
    insights = extract_key_insights(sources)

    lines = ["Based on the following research insights, create original, high-quality content:", ""]
    lines.append("RESEARCH INSIGHTS:")
    lines.extend(f"{i}. {insight}" for i, insight in enumerate(insights[:5], start=1))
    lines += ["", "KEY THEMES:", ", ".join(themes[:3]), ""]
    lines.append("BEST PRACTICES IDENTIFIED:")
    lines.extend(f"- {practice}" for practice in practices[:5])
    lines += [
        "",
        f"TARGET AUDIENCE: {target_audience}",
        "",
        "BRAND VOICE:",
        f"- Tone: {brand_voice.tone}",
        f"- Style: {brand_voice.style}",
        f"- Vocabulary: {brand_voice.vocabulary}",
        "",
        "REQUIREMENTS:",
        "- Create 100% ORIGINAL content (do NOT copy from sources)",
        "- Incorporate insights and best practices naturally",
        "- Include actionable advice and examples",
        "- Optimize for SEO with natural keyword usage",
        "- Structure with clear headings and sections",
    ]
    return "\n".join(lines)

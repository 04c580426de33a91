"""Keyword extraction and set-overlap primitives for content linking.

Pure text operations with zero store dependencies. Used by
``link_scoring.py`` for the lexical and tag signals.
"""
from __future__ import annotations

import re
from collections.abc import Iterable

STOP_WORDS: frozenset[str] = frozenset({
    "a", "an", "the", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "shall", "can", "to", "of", "in", "for",
    "on", "with", "at", "by", "from", "as", "into", "through", "during",
    "before", "after", "above", "below", "between", "out", "off", "over",
    "under", "again", "further", "then", "once", "here", "there", "when",
    "where", "why", "how", "all", "each", "every", "both", "few", "more",
    "most", "other", "some", "such", "no", "not", "only", "own", "same",
    "so", "than", "too", "very", "just", "because", "if", "or", "and",
    "but", "nor", "what", "which", "who", "whom", "this", "that", "these",
    "those", "it", "its", "he", "she", "they", "them", "we", "you", "i",
})

MIN_KEYWORD_LENGTH = 3

_NON_KEYWORD_RE = re.compile(r"[^a-z0-9\s'\-]")


def extract_keywords(text: str | None) -> frozenset[str]:
    """Extract meaningful keywords from text.

    Lowercases, blanks out everything except ``a-z``, digits, apostrophes,
    hyphens and whitespace, then drops short tokens and stop words.

    Args:
        text: Raw text. ``None`` and empty strings yield an empty set.

    Returns:
        Frozen set of normalized keywords.
    """
    if not text:
        return frozenset()
    cleaned = _NON_KEYWORD_RE.sub(" ", text.lower())
    return frozenset(
        w for w in cleaned.split()
        if len(w) >= MIN_KEYWORD_LENGTH and w not in STOP_WORDS
    )


def jaccard_similarity(a: frozenset[str] | set[str], b: frozenset[str] | set[str]) -> float:
    """Jaccard similarity between two keyword sets.

    Returns 0.0 when either set is empty: an empty side carries no
    evidence, so two empty sets are not a perfect match.
    """
    if not a or not b:
        return 0.0
    intersection = len(a & b)
    union = len(a) + len(b) - intersection
    return intersection / union if union else 0.0


def normalize_tags(tags: Iterable[str] | None) -> frozenset[str]:
    """Lowercase and strip tags, dropping blanks."""
    if not tags:
        return frozenset()
    return frozenset(t.strip().lower() for t in tags if t and t.strip())


def tag_overlap(
    a: Iterable[str] | None, b: Iterable[str] | None,
) -> tuple[int, int]:
    """Count case-insensitive tag overlap.

    Returns:
        ``(overlap, denominator)`` where denominator is the size of the
        larger normalized tag set. ``(0, 0)`` if either side is empty.
    """
    ta = normalize_tags(a)
    tb = normalize_tags(b)
    if not ta or not tb:
        return 0, 0
    return len(ta & tb), max(len(ta), len(tb))

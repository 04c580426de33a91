"""Multi-signal scoring of (item, candidate assertion) pairs.

The composite score is an unbounded sum of four independent signals:

1. **lo_ref_match**: learning outcome references equal (case-sensitive);
   adds ``lo_ref_match_boost``. Strongest signal.
2. **structural_match**: chapter equal (case-insensitive) adds
   ``chapter_match_boost``; a further matching section within that chapter
   adds ``SECTION_BOOST_FRACTION`` of the chapter boost.
3. **keyword_overlap**: Jaccard similarity of keyword sets; contributes
   ``similarity * KEYWORD_WEIGHT`` once it reaches ``min_keyword_score``.
4. **tag_overlap**: ``overlap / max(|tags_a|, |tags_b|) * TAG_WEIGHT``.

Keyword and tag contributions together never exceed
``KEYWORD_WEIGHT + TAG_WEIGHT`` (0.65), so a reference boost above that
always dominates lexical evidence.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from contentlink.content_types import Assertion, LinkableItem
from contentlink.settings import DEFAULT_LINKING_CONFIG, LinkingConfig
from contentlink.textmatch import jaccard_similarity, tag_overlap

SECTION_BOOST_FRACTION = 0.4
KEYWORD_WEIGHT = 0.5
TAG_WEIGHT = 0.15

SIGNALS: tuple[str, ...] = (
    "lo_ref_match",
    "structural_match",
    "keyword_overlap",
    "tag_overlap",
)


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class ScoreResult:
    """Composite score of one candidate for one item."""

    assertion_id: str
    score: float
    breakdown: dict[str, float]            # per-signal contribution
    why_matched: dict[str, dict[str, Any]]  # signal-level evidence


@dataclass(frozen=True, slots=True)
class BestMatch:
    """Winning candidate for an item."""

    assertion_id: str
    score: float
    result: ScoreResult
    candidates_scored: int


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

def _lo_ref_score(
    item: LinkableItem, candidate: Assertion, boost: float,
) -> tuple[float, dict[str, Any]]:
    a = item.learning_outcome_ref
    b = candidate.learning_outcome_ref
    if not a or not b:
        return (0.0, {"reason": "missing_ref"})
    if a == b:
        return (boost, {"reason": "match", "ref": a})
    return (0.0, {"reason": "mismatch", "item_ref": a, "candidate_ref": b})


def _same_label(a: str | None, b: str | None) -> bool:
    if not a or not b:
        return False
    return a.lower() == b.lower()


def _structural_parts(
    item: LinkableItem, candidate: Assertion, boost: float,
) -> tuple[tuple[float, ...], dict[str, Any]]:
    """Chapter match, plus a partial boost for a section within it.

    The chapter and section boosts are returned as separate addends so
    the composite score adds them one after the other.
    """
    if not item.chapter or not candidate.chapter:
        return ((), {"reason": "missing_chapter"})
    if not _same_label(item.chapter, candidate.chapter):
        return ((), {"reason": "chapter_mismatch"})
    if _same_label(item.section, candidate.section):
        return (
            (boost, boost * SECTION_BOOST_FRACTION),
            {"reason": "chapter_and_section", "chapter": candidate.chapter,
             "section": candidate.section},
        )
    return ((boost,), {"reason": "chapter", "chapter": candidate.chapter})


def _keyword_score(
    item: LinkableItem, candidate: Assertion, min_keyword_score: float,
) -> tuple[float, dict[str, Any]]:
    similarity = jaccard_similarity(item.keywords, candidate.keywords)
    if similarity > 0 and similarity >= min_keyword_score:
        return (
            similarity * KEYWORD_WEIGHT,
            {"reason": "overlap", "jaccard": similarity,
             "shared": sorted(item.keywords & candidate.keywords)},
        )
    return (0.0, {"reason": "below_min", "jaccard": similarity})


def _tag_score(
    item: LinkableItem, candidate: Assertion,
) -> tuple[float, dict[str, Any]]:
    overlap, denominator = tag_overlap(item.tags, candidate.tags)
    if overlap == 0:
        return (0.0, {"reason": "no_overlap" if denominator else "missing_tags"})
    return (
        overlap / denominator * TAG_WEIGHT,
        {"reason": "overlap", "overlap": overlap, "denominator": denominator},
    )


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def score_candidate(
    item: LinkableItem,
    candidate: Assertion,
    config: LinkingConfig = DEFAULT_LINKING_CONFIG,
) -> ScoreResult:
    """Score a candidate assertion against a linkable item.

    Contributions are accumulated in ``SIGNALS`` order, one addend at a
    time, so a score sitting exactly on ``min_link_score`` compares equal.
    """
    breakdown: dict[str, float] = {}
    why: dict[str, dict[str, Any]] = {}
    addends: list[float] = []

    lo_ref, why["lo_ref_match"] = _lo_ref_score(item, candidate, config.lo_ref_match_boost)
    addends.append(lo_ref)
    breakdown["lo_ref_match"] = lo_ref

    structural, why["structural_match"] = _structural_parts(
        item, candidate, config.chapter_match_boost,
    )
    addends.extend(structural)
    breakdown["structural_match"] = sum(structural, 0.0)

    keyword, why["keyword_overlap"] = _keyword_score(item, candidate, config.min_keyword_score)
    addends.append(keyword)
    breakdown["keyword_overlap"] = keyword

    tag, why["tag_overlap"] = _tag_score(item, candidate)
    addends.append(tag)
    breakdown["tag_overlap"] = tag

    score = 0.0
    for value in addends:
        score += value

    return ScoreResult(
        assertion_id=candidate.assertion_id,
        score=score,
        breakdown=breakdown,
        why_matched=why,
    )


def find_best_match(
    item: LinkableItem,
    candidates: Iterable[Assertion],
    config: LinkingConfig = DEFAULT_LINKING_CONFIG,
) -> BestMatch | None:
    """Return the highest-scoring candidate, or None if nothing scores above 0.

    Equal scores are broken by the smallest ``assertion_id`` so the result
    does not depend on candidate order. The ``min_link_score`` threshold is
    applied by the caller.
    """
    best: ScoreResult | None = None
    scored = 0
    for candidate in candidates:
        scored += 1
        result = score_candidate(item, candidate, config)
        if result.score <= 0:
            continue
        if (
            best is None
            or result.score > best.score
            or (result.score == best.score and result.assertion_id < best.assertion_id)
        ):
            best = result
    if best is None:
        return None
    return BestMatch(
        assertion_id=best.assertion_id,
        score=best.score,
        result=best,
        candidates_scored=scored,
    )

"""Record types shared by the content store and the linking engine.

``Assertion`` is the link target. ``LinkableItem`` is the uniform view of a
question or vocabulary entry that still lacks a parent assertion.
Keyword sets are computed once at construction so scoring never
re-tokenizes text inside the candidate loop.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from contentlink.textmatch import extract_keywords


class ItemKind(str, Enum):
    """Kind of linkable item. Values double as store discriminators."""

    QUESTION = "question"
    VOCABULARY = "vocabulary"


@dataclass(frozen=True, slots=True)
class Assertion:
    """An atomic statement extracted from a source document."""

    assertion_id: str
    source_id: str
    text: str
    chapter: str | None = None
    section: str | None = None
    learning_outcome_ref: str | None = None
    tags: tuple[str, ...] = ()
    has_embedding: bool = False
    keywords: frozenset[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "keywords", extract_keywords(self.text))


@dataclass(frozen=True, slots=True)
class LinkableItem:
    """A question or vocabulary entry considered for linking."""

    item_id: str
    kind: ItemKind
    source_id: str
    text: str
    chapter: str | None = None
    section: str | None = None
    learning_outcome_ref: str | None = None
    tags: tuple[str, ...] = ()
    assertion_id: str | None = None
    keywords: frozenset[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "keywords", extract_keywords(self.text))


def question_item(
    question_id: str,
    source_id: str,
    question_text: str,
    *,
    chapter: str | None = None,
    section: str | None = None,
    learning_outcome_ref: str | None = None,
    tags: tuple[str, ...] | list[str] = (),
    assertion_id: str | None = None,
) -> LinkableItem:
    """Build a LinkableItem for a question; its text is the prompt."""
    return LinkableItem(
        item_id=question_id,
        kind=ItemKind.QUESTION,
        source_id=source_id,
        text=question_text,
        chapter=chapter,
        section=section,
        learning_outcome_ref=learning_outcome_ref,
        tags=tuple(tags),
        assertion_id=assertion_id,
    )


def vocabulary_item(
    vocabulary_id: str,
    source_id: str,
    term: str,
    definition: str,
    *,
    chapter: str | None = None,
    tags: tuple[str, ...] | list[str] = (),
    assertion_id: str | None = None,
) -> LinkableItem:
    """Build a LinkableItem for a vocabulary entry.

    Text is ``term + " " + definition``. Vocabulary carries no section or
    learning outcome reference, so only chapter, keyword and tag signals
    apply to it.
    """
    return LinkableItem(
        item_id=vocabulary_id,
        kind=ItemKind.VOCABULARY,
        source_id=source_id,
        text=f"{term} {definition}",
        chapter=chapter,
        tags=tuple(tags),
        assertion_id=assertion_id,
    )

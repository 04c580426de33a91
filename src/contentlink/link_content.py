"""Question/vocabulary-to-assertion content linking.

Post-extraction reconciliation pass that matches orphaned questions and
vocabulary entries of one source to their most relevant assertion:

1. load every assertion of the source (one query) and every unlinked item
2. score each item against all assertions, keep the best candidate
3. optionally confirm that candidate with embedding similarity
4. persist the back-reference, or count the item as orphaned
5. summarize linked/orphaned counts as human-readable warnings

Non-destructive: only NULL back-references are ever written. Idempotent:
linked items are never loaded again, so a re-run on unchanged data links
nothing new. Safe to re-run after embeddings arrive or thresholds change.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from contentlink.content_types import Assertion, ItemKind, LinkableItem
from contentlink.embeddings import EmbeddingModel
from contentlink.link_scoring import BestMatch, find_best_match
from contentlink.settings import (
    DEFAULT_LINKING_CONFIG,
    LinkingConfig,
    SettingsCache,
    load_linking_config,
)
from contentlink.vector_gate import GateDecision, VectorConfirmationGate

log = logging.getLogger(__name__)

NO_ASSERTIONS_WARNING = "No assertions found for source"

ProgressCallback = Callable[[dict[str, Any]], None]
StopCallback = Callable[[], bool]


class RunPhase(str, Enum):
    LOADING = "loading"
    SCORING = "scoring"
    CONFIRMING = "confirming"
    PERSISTING = "persisting"
    SUMMARIZED = "summarized"


_KIND_PREFIX = {ItemKind.QUESTION: "questions", ItemKind.VOCABULARY: "vocabulary"}
_KIND_NOUN = {ItemKind.QUESTION: "question", ItemKind.VOCABULARY: "vocabulary term"}


def _plural(n: int, noun: str) -> str:
    return f"{n} {noun}{'' if n == 1 else 's'}"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class LinkError:
    """A back-reference that could not be written."""

    kind: ItemKind
    item_id: str
    assertion_id: str
    message: str


@dataclass(slots=True)
class LinkingResult:
    """Summary of one linking run for a source."""

    questions_linked: int = 0
    questions_orphaned: int = 0
    vocabulary_linked: int = 0
    vocabulary_orphaned: int = 0
    warnings: list[str] = field(default_factory=list)
    errors: list[LinkError] = field(default_factory=list)
    vector_rejected: int = 0
    skipped: int = 0

    def linked(self, kind: ItemKind) -> int:
        return getattr(self, f"{_KIND_PREFIX[kind]}_linked")

    def orphaned(self, kind: ItemKind) -> int:
        return getattr(self, f"{_KIND_PREFIX[kind]}_orphaned")

    def _bump(self, kind: ItemKind, outcome: str) -> None:
        name = f"{_KIND_PREFIX[kind]}_{outcome}"
        setattr(self, name, getattr(self, name) + 1)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly payload with the API's camelCase keys."""
        return {
            "questionsLinked": self.questions_linked,
            "questionsOrphaned": self.questions_orphaned,
            "vocabularyLinked": self.vocabulary_linked,
            "vocabularyOrphaned": self.vocabulary_orphaned,
            "vectorRejected": self.vector_rejected,
            "skipped": self.skipped,
            "warnings": list(self.warnings),
            "errors": [
                {
                    "kind": e.kind.value,
                    "itemId": e.item_id,
                    "assertionId": e.assertion_id,
                    "message": e.message,
                }
                for e in self.errors
            ],
        }


@dataclass(frozen=True, slots=True)
class _Planned:
    item: LinkableItem
    match: BestMatch


# ---------------------------------------------------------------------------
# Linker
# ---------------------------------------------------------------------------

class ContentLinker:
    """Links unlinked items of a source to their best-matching assertions.

    Parameters
    ----------
    store:
        Provides ``list_assertions``, ``list_unlinked`` and
        ``set_back_reference`` (see ``ContentStore``).
    config:
        Thresholds and boosts, fixed for the lifetime of the linker.
    embedding_model:
        Used by the vector confirmation gate when
        ``config.use_vector_similarity`` is set.
    gate:
        Overrides the default ``VectorConfirmationGate``.
    """

    def __init__(
        self,
        store: Any,
        config: LinkingConfig = DEFAULT_LINKING_CONFIG,
        *,
        embedding_model: EmbeddingModel | None = None,
        gate: VectorConfirmationGate | None = None,
    ) -> None:
        self._store = store
        self._config = config
        if gate is None:
            gate = VectorConfirmationGate(store, embedding_model, config)
        self._gate = gate

    @property
    def config(self) -> LinkingConfig:
        return self._config

    def link_content_for_source(
        self,
        source_id: str,
        *,
        should_stop: StopCallback | None = None,
        progress: ProgressCallback | None = None,
    ) -> LinkingResult:
        """Run one linking pass over *source_id*.

        Items are processed one kind at a time in chunks of
        ``config.confirm_workers``; *should_stop* is checked between chunks
        and remaining items are reported as skipped. Links already written
        are kept.

        Raises:
            StoreLoadError: assertions or unlinked items could not be loaded.
        """
        result = LinkingResult()
        self._report(progress, RunPhase.LOADING, None, 0, 0)

        assertions = self._store.list_assertions(source_id)
        if not assertions:
            log.info("Source %s has no assertions; nothing to link", source_id)
            result.warnings.append(NO_ASSERTIONS_WARNING)
            self._report(progress, RunPhase.SUMMARIZED, None, 0, 0)
            return result

        unlinked = {kind: self._store.list_unlinked(source_id, kind) for kind in ItemKind}
        if not any(unlinked.values()):
            log.debug("Source %s has no unlinked items", source_id)
            self._report(progress, RunPhase.SUMMARIZED, None, 0, 0)
            return result

        log.info(
            "Linking source %s: %d assertion(s), %d question(s), %d vocabulary term(s)",
            source_id, len(assertions),
            len(unlinked[ItemKind.QUESTION]), len(unlinked[ItemKind.VOCABULARY]),
        )
        by_id = {a.assertion_id: a for a in assertions}

        stopped = False
        for kind in ItemKind:
            items = unlinked[kind]
            if stopped:
                result.skipped += len(items)
                continue
            stopped = self._link_kind(kind, items, assertions, by_id, result, should_stop, progress)

        self._summarize(result)
        self._report(progress, RunPhase.SUMMARIZED, None, 0, 0)
        log.info(
            "Linked source %s: questions %d/%d, vocabulary %d/%d, errors %d",
            source_id,
            result.questions_linked, len(unlinked[ItemKind.QUESTION]),
            result.vocabulary_linked, len(unlinked[ItemKind.VOCABULARY]),
            len(result.errors),
        )
        return result

    # ─── Per-kind loop ────────────────────────────────────────────

    def _link_kind(
        self,
        kind: ItemKind,
        items: list[LinkableItem],
        assertions: list[Assertion],
        by_id: dict[str, Assertion],
        result: LinkingResult,
        should_stop: StopCallback | None,
        progress: ProgressCallback | None,
    ) -> bool:
        """Link every item of one kind. Returns True if stopped early."""
        chunk_size = max(1, self._config.confirm_workers)
        total = len(items)
        for start in range(0, total, chunk_size):
            if should_stop is not None and should_stop():
                result.skipped += total - start
                log.info("Stop requested; %d %s item(s) not processed", total - start, kind.value)
                return True
            chunk = items[start:start + chunk_size]

            self._report(progress, RunPhase.SCORING, kind, start, total)
            planned: list[_Planned] = []
            for item in chunk:
                match = find_best_match(item, assertions, self._config)
                if match is None or match.score < self._config.min_link_score:
                    log.debug(
                        "%s %s orphaned: best score %s below %s",
                        kind.value, item.item_id,
                        f"{match.score:.3f}" if match else "0", self._config.min_link_score,
                    )
                    result._bump(kind, "orphaned")
                    continue
                planned.append(_Planned(item, match))

            self._report(progress, RunPhase.CONFIRMING, kind, start, total)
            decisions = self._confirm_all(planned, by_id)

            self._report(progress, RunPhase.PERSISTING, kind, start, total)
            for plan, decision in zip(planned, decisions, strict=True):
                if not decision.accepted:
                    log.debug(
                        "%s %s orphaned: vector similarity %.3f below %s",
                        kind.value, plan.item.item_id,
                        decision.similarity or 0.0, self._config.min_vector_similarity,
                    )
                    result.vector_rejected += 1
                    result._bump(kind, "orphaned")
                    continue
                self._persist(kind, plan, result)

        self._report(progress, RunPhase.PERSISTING, kind, total, total)
        return False

    def _confirm_all(
        self, planned: list[_Planned], by_id: dict[str, Assertion],
    ) -> list[GateDecision]:
        def _confirm(plan: _Planned) -> GateDecision:
            candidate = by_id.get(plan.match.assertion_id)
            return self._gate.confirm(
                plan.item.text,
                plan.match.assertion_id,
                has_embedding=candidate.has_embedding if candidate else None,
            )

        if len(planned) <= 1 or not self._gate.enabled:
            return [_confirm(p) for p in planned]
        workers = min(self._config.confirm_workers, len(planned))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(_confirm, planned))

    def _persist(self, kind: ItemKind, plan: _Planned, result: LinkingResult) -> None:
        item_id = plan.item.item_id
        assertion_id = plan.match.assertion_id
        try:
            linked = self._store.set_back_reference(kind, item_id, assertion_id)
        except Exception as exc:
            log.warning("Failed to persist link %s %s -> %s: %s", kind.value, item_id, assertion_id, exc)
            result.errors.append(LinkError(kind, item_id, assertion_id, str(exc)))
            return
        if not linked:
            log.warning("%s %s was linked by another run; left unchanged", kind.value, item_id)
            result.errors.append(LinkError(kind, item_id, assertion_id, "already linked"))
            return
        log.debug("%s %s -> %s (score %.3f)", kind.value, item_id, assertion_id, plan.match.score)
        result._bump(kind, "linked")

    # ─── Summary ──────────────────────────────────────────────────

    def _summarize(self, result: LinkingResult) -> None:
        threshold = self._config.min_link_score
        for kind in ItemKind:
            orphaned = result.orphaned(kind)
            if orphaned > 0:
                result.warnings.append(
                    f"{_plural(orphaned, _KIND_NOUN[kind])} could not be linked to "
                    f"assertions (below score threshold {threshold})"
                )
        if result.vector_rejected > 0:
            result.warnings.append(
                f"{_plural(result.vector_rejected, 'item')} rejected by vector "
                f"similarity below {self._config.min_vector_similarity}"
            )
        q_linked = result.questions_linked
        v_linked = result.vocabulary_linked
        if q_linked > 0 or v_linked > 0:
            result.warnings.append(
                f"Linked {_plural(q_linked, 'question')} and "
                f"{_plural(v_linked, 'vocabulary term')} to assertions"
            )
        for err in result.errors:
            result.warnings.append(
                f"Failed to persist link for {err.kind.value} {err.item_id}: {err.message}"
            )
        if result.skipped > 0:
            result.warnings.append(
                f"Run stopped early; {_plural(result.skipped, 'item')} not processed"
            )

    @staticmethod
    def _report(
        progress: ProgressCallback | None,
        phase: RunPhase,
        kind: ItemKind | None,
        processed: int,
        total: int,
    ) -> None:
        if progress is None:
            return
        progress({
            "phase": phase.value,
            "kind": kind.value if kind is not None else None,
            "processed": processed,
            "total": total,
        })


def link_content_for_source(
    source_id: str,
    store: Any,
    *,
    config: LinkingConfig | None = None,
    settings_cache: SettingsCache | None = None,
    embedding_model: EmbeddingModel | None = None,
) -> LinkingResult:
    """Link orphaned questions and vocabulary of *source_id*.

    When *config* is omitted it is loaded from the store's
    ``content_linking.*`` settings through *settings_cache*.
    """
    if config is None:
        config = load_linking_config(store, settings_cache)
    linker = ContentLinker(store, config, embedding_model=embedding_model)
    return linker.link_content_for_source(source_id)

"""Second-stage semantic confirmation of a lexical best match.

Only the single best lexical candidate of an item is checked, so a run
costs at most one embedding call per item rather than one per assertion.
The gate never fails a run: when it cannot decide it accepts.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from contentlink.embeddings import EmbeddingModel
from contentlink.settings import DEFAULT_LINKING_CONFIG, LinkingConfig

log = logging.getLogger(__name__)

# Decision reasons
DISABLED = "disabled"
NO_EMBEDDING = "no_embedding"
NO_MODEL = "no_model"
EMBEDDING_FAILED = "embedding_failed"
CONFIRMED = "confirmed"
REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class GateDecision:
    """Outcome of a confirmation check."""

    accepted: bool
    reason: str
    similarity: float | None = None


class VectorConfirmationGate:
    """Veto weak lexical matches whose embeddings disagree.

    Parameters
    ----------
    store:
        Provides ``assertion_has_embedding(assertion_id)`` and
        ``cosine_similarity(vector, assertion_id)``.
    model:
        Embedding model for item text. ``None`` makes every check pass.
    config:
        ``use_vector_similarity`` and ``min_vector_similarity`` are read.
    """

    def __init__(
        self,
        store: Any,
        model: EmbeddingModel | None,
        config: LinkingConfig = DEFAULT_LINKING_CONFIG,
    ) -> None:
        self._store = store
        self._model = model
        self._config = config

    @property
    def enabled(self) -> bool:
        return self._config.use_vector_similarity

    def confirm(
        self,
        item_text: str,
        assertion_id: str,
        *,
        has_embedding: bool | None = None,
    ) -> GateDecision:
        """Check *item_text* against the candidate's stored embedding.

        *has_embedding* is the flag already loaded with the candidate; when
        omitted the store is asked.
        """
        if not self._config.use_vector_similarity:
            return GateDecision(True, DISABLED)
        if has_embedding is None:
            has_embedding = self._store.assertion_has_embedding(assertion_id)
        if not has_embedding:
            # nothing to compare yet; a re-run after backfill will check it
            return GateDecision(True, NO_EMBEDDING)
        if self._model is None:
            log.warning("Vector confirmation enabled but no embedding model configured")
            return GateDecision(True, NO_MODEL)

        try:
            vector = self._model.embed_text(item_text)
            similarity = self._store.cosine_similarity(vector, assertion_id)
        except Exception as exc:
            log.warning(
                "Embedding check failed for assertion %s, accepting lexical match: %s",
                assertion_id, exc,
            )
            return GateDecision(True, EMBEDDING_FAILED)

        if similarity is None:
            return GateDecision(True, NO_EMBEDDING)
        if similarity >= self._config.min_vector_similarity:
            return GateDecision(True, CONFIRMED, similarity)
        return GateDecision(False, REJECTED, similarity)

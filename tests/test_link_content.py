"""Tests for contentlink.link_content: the linking orchestrator."""
from __future__ import annotations

import threading
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from contentlink.content_store import ContentStore, ContentStoreError, StoreLoadError
from contentlink.content_types import Assertion, ItemKind, question_item
from contentlink.embeddings import MockEmbeddingModel, floats_to_bytes
from contentlink.link_content import (
    NO_ASSERTIONS_WARNING,
    ContentLinker,
    LinkingResult,
    link_content_for_source,
)
from contentlink.settings import LinkingConfig, SettingsCache
from contentlink.vector_gate import GateDecision, VectorConfirmationGate


# ───────────────────── Fixtures ──────────────────────────────────────


@pytest.fixture()
def store(tmp_path: Path) -> ContentStore:
    s = ContentStore(tmp_path / "content.duckdb", create_if_missing=True)
    yield s  # type: ignore[misc]
    s.close()


def _seed_photosynthesis(store: ContentStore) -> None:
    store.save_assertions([
        {"assertion_id": "a1", "source_id": "s1",
         "text": "Photosynthesis converts light energy into chemical energy",
         "chapter": "Bio-3", "learning_outcome_ref": "LO-PHOTO"},
    ])
    store.save_questions([
        {"question_id": "q1", "source_id": "s1",
         "text": "Explain how plants convert light energy",
         "chapter": "Bio-3", "learning_outcome_ref": "LO-PHOTO"},
        {"question_id": "q2", "source_id": "s1", "text": "What is the capital of France?"},
    ])


def _seed_chapters(store: ContentStore) -> None:
    """Three assertions; questions and vocabulary that match by chapter."""
    store.save_assertions([
        {"assertion_id": f"a{i}", "source_id": "s1", "text": f"Statement {i}",
         "chapter": str(i)}
        for i in range(1, 4)
    ])
    store.save_questions([
        {"question_id": f"q{i}", "source_id": "s1", "text": f"Question {i}",
         "chapter": str(i)}
        for i in range(1, 4)
    ])
    store.save_vocabulary([
        {"vocabulary_id": f"v{i}", "source_id": "s1", "term": f"Term{i}",
         "definition": "something", "chapter": str(i)}
        for i in range(1, 3)
    ])


def _embed(store: ContentStore, assertion_id: str, vec: list[float]) -> None:
    store.save_assertion_embeddings([
        {"assertion_id": assertion_id, "embedding": floats_to_bytes(vec)},
    ])


class _FixedModel(MockEmbeddingModel):
    """Embeds every text to the same vector."""

    def __init__(self, vec: list[float]) -> None:
        super().__init__(dim=len(vec))
        self._vec = floats_to_bytes(vec)

    def embed(self, texts: list[str]) -> list[bytes]:
        return [self._vec for _ in texts]


# ───────────────────── End-to-end ────────────────────────────────────


class TestEndToEnd:
    def test_photosynthesis_scenario(self, store: ContentStore) -> None:
        _seed_photosynthesis(store)
        result = ContentLinker(store).link_content_for_source("s1")

        assert result.questions_linked == 1
        assert result.questions_orphaned == 1
        assert result.vocabulary_linked == 0
        assert result.vocabulary_orphaned == 0
        assert store.get_back_reference(ItemKind.QUESTION, "q1") == "a1"
        assert store.get_back_reference(ItemKind.QUESTION, "q2") is None
        assert result.warnings == [
            "1 question could not be linked to assertions (below score threshold 0.2)",
            "Linked 1 question and 0 vocabulary terms to assertions",
        ]
        assert result.errors == []

    def test_links_both_kinds(self, store: ContentStore) -> None:
        _seed_chapters(store)
        result = ContentLinker(store).link_content_for_source("s1")
        assert result.questions_linked == 3
        assert result.vocabulary_linked == 2
        for i in range(1, 4):
            assert store.get_back_reference(ItemKind.QUESTION, f"q{i}") == f"a{i}"
        for i in range(1, 3):
            assert store.get_back_reference(ItemKind.VOCABULARY, f"v{i}") == f"a{i}"
        assert result.warnings == ["Linked 3 questions and 2 vocabulary terms to assertions"]

    def test_module_function_loads_stored_settings(self, store: ContentStore) -> None:
        _seed_photosynthesis(store)
        store.save_setting("content_linking.min_link_score", 5.0)
        result = link_content_for_source("s1", store, settings_cache=SettingsCache())
        assert result.questions_linked == 0
        assert result.questions_orphaned == 2

    def test_module_function_explicit_config(self, store: ContentStore) -> None:
        _seed_photosynthesis(store)
        store.save_setting("content_linking.min_link_score", 5.0)
        result = link_content_for_source("s1", store, config=LinkingConfig())
        assert result.questions_linked == 1


# ───────────────────── Idempotence / non-destructiveness ────────────


class TestRerun:
    def test_second_run_links_nothing(self, store: ContentStore) -> None:
        _seed_photosynthesis(store)
        linker = ContentLinker(store)
        linker.link_content_for_source("s1")
        second = linker.link_content_for_source("s1")
        assert second.questions_linked == 0
        assert second.vocabulary_linked == 0
        assert second.questions_orphaned == 1
        assert store.get_back_reference(ItemKind.QUESTION, "q1") == "a1"

    def test_existing_links_untouched(self, store: ContentStore) -> None:
        _seed_chapters(store)
        store.save_questions([
            {"question_id": "q9", "source_id": "s1", "text": "Question 1",
             "chapter": "1", "assertion_id": "a3"},
        ])
        ContentLinker(store).link_content_for_source("s1")
        assert store.get_back_reference(ItemKind.QUESTION, "q9") == "a3"

    def test_other_sources_untouched(self, store: ContentStore) -> None:
        _seed_chapters(store)
        store.save_assertions([
            {"assertion_id": "x1", "source_id": "s2", "text": "Statement 1", "chapter": "1"},
        ])
        store.save_questions([
            {"question_id": "x-q", "source_id": "s2", "text": "Question 1", "chapter": "1"},
        ])
        ContentLinker(store).link_content_for_source("s1")
        assert store.get_back_reference(ItemKind.QUESTION, "x-q") is None
        assert store.get_back_reference(ItemKind.QUESTION, "q1") == "a1"


# ───────────────────── Thresholds ────────────────────────────────────


class TestThresholds:
    def test_score_equal_to_threshold_links(self, store: ContentStore) -> None:
        _seed_chapters(store)
        result = ContentLinker(store, LinkingConfig(min_link_score=0.3)).link_content_for_source("s1")
        assert result.questions_linked == 3

    def test_section_match_equal_to_threshold_links(self, store: ContentStore) -> None:
        store.save_assertions([
            {"assertion_id": "a1", "source_id": "s1", "text": "Statement",
             "chapter": "2", "section": "2.1"},
        ])
        store.save_questions([
            {"question_id": "q1", "source_id": "s1", "text": "Question",
             "chapter": "2", "section": "2.1"},
        ])
        cfg = LinkingConfig(chapter_match_boost=0.2, min_link_score=0.28)
        result = ContentLinker(store, cfg).link_content_for_source("s1")
        assert result.questions_linked == 1
        assert result.questions_orphaned == 0
        assert store.get_back_reference(ItemKind.QUESTION, "q1") == "a1"

    def test_score_below_threshold_orphans(self, store: ContentStore) -> None:
        _seed_chapters(store)
        cfg = LinkingConfig(min_link_score=0.31)
        result = ContentLinker(store, cfg).link_content_for_source("s1")
        assert result.questions_linked == 0
        assert result.questions_orphaned == 3
        assert result.vocabulary_orphaned == 2
        assert result.warnings == [
            "3 questions could not be linked to assertions (below score threshold 0.31)",
            "2 vocabulary terms could not be linked to assertions (below score threshold 0.31)",
        ]

    def test_lowering_threshold_then_rerun(self, store: ContentStore) -> None:
        _seed_chapters(store)
        ContentLinker(store, LinkingConfig(min_link_score=1.0)).link_content_for_source("s1")
        result = ContentLinker(store).link_content_for_source("s1")
        assert result.questions_linked == 3


# ───────────────────── Empty inputs ──────────────────────────────────


class TestEmptyInputs:
    def test_no_assertions(self, store: ContentStore) -> None:
        store.save_questions([{"question_id": "q1", "source_id": "s1", "text": "Q"}])
        result = ContentLinker(store).link_content_for_source("s1")
        assert result.warnings == [NO_ASSERTIONS_WARNING]
        assert result.questions_linked == 0
        assert result.questions_orphaned == 0
        assert store.get_back_reference(ItemKind.QUESTION, "q1") is None

    def test_no_unlinked_items(self, store: ContentStore) -> None:
        store.save_assertions([{"assertion_id": "a1", "source_id": "s1", "text": "A"}])
        result = ContentLinker(store).link_content_for_source("s1")
        assert result.warnings == []
        assert result.to_dict()["questionsLinked"] == 0

    def test_load_failure_propagates(self) -> None:
        broken = MagicMock()
        broken.list_assertions.side_effect = StoreLoadError("db gone")
        with pytest.raises(StoreLoadError):
            ContentLinker(broken).link_content_for_source("s1")


# ───────────────────── Vector confirmation ───────────────────────────


class TestVectorConfirmation:
    def test_pass_through_without_embeddings(self, store: ContentStore) -> None:
        _seed_chapters(store)
        cfg = LinkingConfig(use_vector_similarity=True)
        result = ContentLinker(
            store, cfg, embedding_model=MockEmbeddingModel(),
        ).link_content_for_source("s1")
        assert result.questions_linked == 3
        assert result.vector_rejected == 0

    def test_rejects_dissimilar(self, store: ContentStore) -> None:
        _seed_chapters(store)
        _embed(store, "a1", [1.0, 0.0])
        cfg = LinkingConfig(use_vector_similarity=True, min_vector_similarity=0.6)
        result = ContentLinker(
            store, cfg, embedding_model=_FixedModel([0.0, 1.0]),
        ).link_content_for_source("s1")
        # q1 and v1 both target a1 and are vetoed; the rest pass through
        assert result.vector_rejected == 2
        assert result.questions_linked == 2
        assert result.vocabulary_linked == 1
        assert store.get_back_reference(ItemKind.QUESTION, "q1") is None
        assert "2 items rejected by vector similarity below 0.6" in result.warnings

    def test_confirms_similar(self, store: ContentStore) -> None:
        _seed_chapters(store)
        _embed(store, "a1", [1.0, 0.1])
        cfg = LinkingConfig(use_vector_similarity=True)
        result = ContentLinker(
            store, cfg, embedding_model=_FixedModel([1.0, 0.0]),
        ).link_content_for_source("s1")
        assert result.vector_rejected == 0
        assert store.get_back_reference(ItemKind.QUESTION, "q1") == "a1"

    def test_embedding_failure_keeps_lexical_links(self, store: ContentStore) -> None:
        _seed_chapters(store)
        _embed(store, "a1", [1.0, 0.0])
        model = MagicMock()
        model.embed_text.side_effect = RuntimeError("API down")
        cfg = LinkingConfig(use_vector_similarity=True)
        result = ContentLinker(store, cfg, embedding_model=model).link_content_for_source("s1")
        assert result.questions_linked == 3
        assert result.vocabulary_linked == 2
        assert result.errors == []

    def test_disabled_gate_never_embeds(self, store: ContentStore) -> None:
        _seed_chapters(store)
        _embed(store, "a1", [1.0, 0.0])
        model = MagicMock()
        ContentLinker(store, embedding_model=model).link_content_for_source("s1")
        model.embed_text.assert_not_called()

    def test_concurrent_confirmation(self, store: ContentStore) -> None:
        _seed_chapters(store)
        seen_threads: set[int] = set()
        gate = MagicMock(spec=VectorConfirmationGate)
        gate.enabled = True

        def _confirm(*_args: Any, **_kw: Any) -> GateDecision:
            seen_threads.add(threading.get_ident())
            return GateDecision(True, "confirmed", 0.9)

        gate.confirm.side_effect = _confirm
        cfg = LinkingConfig(use_vector_similarity=True, confirm_workers=4)
        result = ContentLinker(store, cfg, gate=gate).link_content_for_source("s1")
        assert result.questions_linked == 3
        assert result.vocabulary_linked == 2
        assert gate.confirm.call_count == 5
        assert threading.get_ident() not in seen_threads


# ───────────────────── Persistence failures ──────────────────────────


class TestPersistenceFailures:
    def _fake_store(self) -> MagicMock:
        fake = MagicMock()
        fake.list_assertions.return_value = [
            Assertion("a1", "s1", "Statement", chapter="1"),
        ]
        fake.list_unlinked.side_effect = lambda _sid, kind: (
            [
                question_item("q1", "s1", "Question", chapter="1"),
                question_item("q2", "s1", "Question", chapter="1"),
            ]
            if ItemKind(kind) is ItemKind.QUESTION else []
        )
        return fake

    def test_one_failure_does_not_abort_run(self) -> None:
        fake = self._fake_store()
        fake.set_back_reference.side_effect = [ContentStoreError("locked"), True]
        result = ContentLinker(fake).link_content_for_source("s1")
        assert result.questions_linked == 1
        assert len(result.errors) == 1
        err = result.errors[0]
        assert (err.kind, err.item_id, err.assertion_id, err.message) == (
            ItemKind.QUESTION, "q1", "a1", "locked",
        )
        assert "Failed to persist link for question q1: locked" in result.warnings

    def test_concurrently_linked_item_reported(self) -> None:
        fake = self._fake_store()
        fake.set_back_reference.side_effect = [False, True]
        result = ContentLinker(fake).link_content_for_source("s1")
        assert result.questions_linked == 1
        assert result.errors[0].message == "already linked"


# ───────────────────── Cancellation / progress ───────────────────────


class TestCancellation:
    def test_stop_before_start_skips_everything(self, store: ContentStore) -> None:
        _seed_chapters(store)
        result = ContentLinker(store).link_content_for_source("s1", should_stop=lambda: True)
        assert result.skipped == 5
        assert result.questions_linked == 0
        assert store.list_unlinked("s1", ItemKind.QUESTION) != []
        assert result.warnings == ["Run stopped early; 5 items not processed"]

    def test_stop_midway_keeps_written_links(self, store: ContentStore) -> None:
        _seed_chapters(store)
        calls = {"n": 0}

        def _stop() -> bool:
            calls["n"] += 1
            return calls["n"] > 2

        result = ContentLinker(store).link_content_for_source("s1", should_stop=_stop)
        assert result.questions_linked == 2
        assert result.skipped == 3
        assert store.get_back_reference(ItemKind.QUESTION, "q1") == "a1"
        assert store.get_back_reference(ItemKind.QUESTION, "q3") is None

    def test_progress_reports_phases(self, store: ContentStore) -> None:
        _seed_chapters(store)
        cursors: list[dict[str, Any]] = []
        ContentLinker(store).link_content_for_source("s1", progress=cursors.append)
        phases = [c["phase"] for c in cursors]
        assert phases[0] == "loading"
        assert phases[-1] == "summarized"
        assert {"scoring", "confirming", "persisting"} <= set(phases)
        done = [c for c in cursors if c["phase"] == "persisting" and c["processed"] == c["total"]]
        assert {c["kind"] for c in done} == {"question", "vocabulary"}


# ───────────────────── Result payload ────────────────────────────────


class TestLinkingResult:
    def test_to_dict_keys(self) -> None:
        result = LinkingResult(questions_linked=2, vocabulary_orphaned=1)
        d = result.to_dict()
        assert d == {
            "questionsLinked": 2,
            "questionsOrphaned": 0,
            "vocabularyLinked": 0,
            "vocabularyOrphaned": 1,
            "vectorRejected": 0,
            "skipped": 0,
            "warnings": [],
            "errors": [],
        }

    def test_per_kind_accessors(self) -> None:
        result = LinkingResult(questions_linked=2, vocabulary_orphaned=1)
        assert result.linked(ItemKind.QUESTION) == 2
        assert result.orphaned(ItemKind.VOCABULARY) == 1

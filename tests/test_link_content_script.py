"""Tests for scripts/link_content.py: one-shot linking CLI."""
from __future__ import annotations

import importlib.util
import sys
from pathlib import Path

import orjson
import pytest

_ROOT = Path(__file__).resolve().parents[1]


def _load_script():
    src = _ROOT / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    spec = importlib.util.spec_from_file_location(
        "link_content_cli", _ROOT / "scripts" / "link_content.py",
    )
    assert spec is not None and spec.loader is not None
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)
    return mod


_mod = _load_script()
main = _mod.main

from contentlink.content_store import ContentStore  # noqa: E402
from contentlink.content_types import ItemKind  # noqa: E402


@pytest.fixture()
def db(tmp_path: Path) -> Path:
    path = tmp_path / "content.duckdb"
    with ContentStore(path, create_if_missing=True) as store:
        store.save_assertions([
            {"assertion_id": "a1", "source_id": "s1", "text": "Statement", "chapter": "1"},
        ])
        store.save_questions([
            {"question_id": "q1", "source_id": "s1", "text": "Question", "chapter": "1"},
        ])
        store.save_vocabulary([
            {"vocabulary_id": "v1", "source_id": "s1", "term": "Term",
             "definition": "meaning", "chapter": "1"},
        ])
    return path


def _run(capsys: pytest.CaptureFixture[str], argv: list[str]) -> tuple[int, dict]:
    code = main(argv)
    out = capsys.readouterr().out
    return code, (orjson.loads(out) if out.strip() else {})


class TestLinkContentScript:
    def test_links_and_prints_summary(
        self, db: Path, capsys: pytest.CaptureFixture[str],
    ) -> None:
        code, payload = _run(capsys, ["--db", str(db), "--source-id", "s1"])
        assert code == 0
        assert payload["questionsLinked"] == 1
        assert payload["vocabularyLinked"] == 1
        assert payload["warnings"] == [
            "Linked 1 question and 1 vocabulary term to assertions",
        ]
        with ContentStore(db) as store:
            assert store.get_back_reference(ItemKind.QUESTION, "q1") == "a1"

    def test_threshold_override(self, db: Path, capsys: pytest.CaptureFixture[str]) -> None:
        code, payload = _run(
            capsys, ["--db", str(db), "--source-id", "s1", "--min-link-score", "0.5"],
        )
        assert code == 0
        assert payload["questionsOrphaned"] == 1
        assert payload["vocabularyOrphaned"] == 1

    def test_invalid_override(self, db: Path, capsys: pytest.CaptureFixture[str]) -> None:
        code, _ = _run(capsys, ["--db", str(db), "--source-id", "s1", "--workers", "99"])
        assert code == 2

    def test_embed_missing_then_vector_confirm(
        self, db: Path, capsys: pytest.CaptureFixture[str],
    ) -> None:
        code, payload = _run(capsys, [
            "--db", str(db), "--source-id", "s1",
            "--embeddings", "mock", "--embed-missing", "--use-vector",
            "--min-vector-similarity", "0.99",
        ])
        assert code == 0
        with ContentStore(db) as store:
            assert store.assertion_has_embedding("a1")
        # unrelated mock vectors are far apart, so both matches are vetoed
        assert payload["vectorRejected"] == 2
        assert payload["questionsLinked"] == 0

    def test_embed_missing_requires_backend(
        self, db: Path, capsys: pytest.CaptureFixture[str],
    ) -> None:
        code, _ = _run(capsys, ["--db", str(db), "--source-id", "s1", "--embed-missing"])
        assert code == 2

    def test_submit_queues_task(self, db: Path, capsys: pytest.CaptureFixture[str]) -> None:
        code, payload = _run(capsys, ["--db", str(db), "--source-id", "s1", "--submit"])
        assert code == 0
        assert payload["sourceId"] == "s1"
        with ContentStore(db) as store:
            task = store.get_linking_task(payload["taskId"])
            assert task is not None
            assert store.get_back_reference(ItemKind.QUESTION, "q1") is None

    def test_missing_db(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        code, _ = _run(capsys, ["--db", str(tmp_path / "absent.duckdb"), "--source-id", "s1"])
        assert code == 1

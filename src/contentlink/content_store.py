"""DuckDB read/write store for assertions, linkable items and linking state.

Manages a single ``content.duckdb`` file containing:

* ``content_assertions``: link targets, with an optional float32 embedding
* ``content_questions`` / ``content_vocabulary``: linkable items and their
  nullable ``assertion_id`` back-reference
* ``system_settings``: JSON-valued key/value settings (``content_linking.*``)
* ``linking_tasks``: background linking runs and their progress cursor

Write discipline: the linker only ever writes ``assertion_id``/``linked_at``
on items whose ``assertion_id`` is still NULL. Assertions are written by the
upstream extraction pass and by the embedding backfill only.
"""
from __future__ import annotations

import contextlib
import threading
import uuid
from pathlib import Path
from typing import Any

import duckdb
import orjson

from contentlink.content_types import (
    Assertion,
    ItemKind,
    LinkableItem,
    question_item,
    vocabulary_item,
)
from contentlink.embeddings import cosine_similarity
from contentlink.linking_task import LinkingTask, TaskStatus

SCHEMA_VERSION = "1.0.0"


class ContentStoreError(RuntimeError):
    """A store operation failed."""


class StoreLoadError(ContentStoreError):
    """Loading assertions or items failed; a linking run cannot proceed."""


def _uuid() -> str:
    return str(uuid.uuid4())


def _to_dict(cols: list[str], row: tuple[Any, ...]) -> dict[str, Any]:
    """Zip column names with a row tuple into a dict (strict length check)."""
    return dict(zip(cols, row, strict=True))


def _json_dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode("utf-8")


def _decode_tags(raw: Any) -> tuple[str, ...]:
    if not raw:
        return ()
    if isinstance(raw, (list, tuple)):
        return tuple(str(t) for t in raw)
    decoded = orjson.loads(raw)
    return tuple(str(t) for t in decoded) if isinstance(decoded, list) else ()


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_DDL = """
CREATE TABLE IF NOT EXISTS _schema_version (
    table_name VARCHAR PRIMARY KEY,
    version VARCHAR NOT NULL
);

-- ─── ASSERTIONS ──────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS content_assertions (
    assertion_id VARCHAR PRIMARY KEY,
    source_id VARCHAR NOT NULL,
    assertion_text VARCHAR NOT NULL,
    chapter VARCHAR,
    section VARCHAR,
    learning_outcome_ref VARCHAR,
    tags VARCHAR NOT NULL DEFAULT '[]',
    order_index INTEGER NOT NULL DEFAULT 0,
    embedding BLOB,
    embedding_model VARCHAR,
    embedding_text_hash VARCHAR,
    created_at TIMESTAMP DEFAULT current_timestamp
);
CREATE INDEX IF NOT EXISTS idx_assertions_source ON content_assertions(source_id);

-- ─── QUESTIONS ───────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS content_questions (
    question_id VARCHAR PRIMARY KEY,
    source_id VARCHAR NOT NULL,
    question_text VARCHAR NOT NULL,
    chapter VARCHAR,
    section VARCHAR,
    learning_outcome_ref VARCHAR,
    tags VARCHAR NOT NULL DEFAULT '[]',
    sort_order INTEGER NOT NULL DEFAULT 0,
    assertion_id VARCHAR,
    linked_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT current_timestamp
);
CREATE INDEX IF NOT EXISTS idx_questions_source ON content_questions(source_id);

-- ─── VOCABULARY ──────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS content_vocabulary (
    vocabulary_id VARCHAR PRIMARY KEY,
    source_id VARCHAR NOT NULL,
    term VARCHAR NOT NULL,
    definition VARCHAR NOT NULL DEFAULT '',
    chapter VARCHAR,
    topic VARCHAR,
    tags VARCHAR NOT NULL DEFAULT '[]',
    sort_order INTEGER NOT NULL DEFAULT 0,
    assertion_id VARCHAR,
    linked_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT current_timestamp
);
CREATE INDEX IF NOT EXISTS idx_vocabulary_source ON content_vocabulary(source_id);

-- ─── SYSTEM SETTINGS ─────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS system_settings (
    key VARCHAR PRIMARY KEY,
    value VARCHAR NOT NULL,
    updated_at TIMESTAMP DEFAULT current_timestamp
);

-- ─── LINKING TASKS ───────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS linking_tasks (
    task_id VARCHAR PRIMARY KEY,
    source_id VARCHAR NOT NULL,
    status VARCHAR NOT NULL DEFAULT 'pending',
    cursor_json VARCHAR,
    result_json VARCHAR,
    error_message VARCHAR,
    submitted_at TIMESTAMP DEFAULT current_timestamp,
    started_at TIMESTAMP,
    completed_at TIMESTAMP
);
CREATE INDEX IF NOT EXISTS idx_tasks_source ON linking_tasks(source_id)
"""

# (table, id column) per item kind
_ITEM_TABLES: dict[ItemKind, tuple[str, str]] = {
    ItemKind.QUESTION: ("content_questions", "question_id"),
    ItemKind.VOCABULARY: ("content_vocabulary", "vocabulary_id"),
}


class ContentStore:
    """Read/write interface to ``content.duckdb``.

    A single connection is shared; calls are serialized with a lock so the
    linker's confirmation pool can read embeddings from worker threads.
    """

    def __init__(
        self,
        db_path: Path | str,
        *,
        create_if_missing: bool = False,
    ) -> None:
        self._db_path = Path(db_path)
        if not self._db_path.exists() and not create_if_missing:
            raise FileNotFoundError(f"Content database not found: {self._db_path}")

        self._lock = threading.RLock()
        self._conn: Any = duckdb.connect(str(self._db_path))
        self._create_schema()

    def _create_schema(self) -> None:
        """Create all tables if they don't exist."""
        for stmt in _SCHEMA_DDL.split(";"):
            stmt = stmt.strip()
            if stmt:
                self._conn.execute(stmt)
        self._conn.execute(
            "INSERT OR REPLACE INTO _schema_version (table_name, version) VALUES (?, ?)",
            ["content", SCHEMA_VERSION],
        )

    def _execute(self, sql: str, params: list[Any] | None = None) -> Any:
        with self._lock:
            return self._conn.execute(sql, params or [])

    def _fetchall(self, sql: str, params: list[Any] | None = None) -> list[tuple[Any, ...]]:
        with self._lock:
            return self._conn.execute(sql, params or []).fetchall()

    def _fetchone(self, sql: str, params: list[Any] | None = None) -> tuple[Any, ...] | None:
        with self._lock:
            return self._conn.execute(sql, params or []).fetchone()

    # ─── Upstream writes ──────────────────────────────────────────

    def save_assertions(self, assertions: list[dict[str, Any]]) -> int:
        """Insert or replace assertions (upstream extraction output)."""
        with self._lock:
            for i, a in enumerate(assertions):
                self._conn.execute("""
                    INSERT OR REPLACE INTO content_assertions
                    (assertion_id, source_id, assertion_text, chapter, section,
                     learning_outcome_ref, tags, order_index)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, [
                    a.get("assertion_id") or _uuid(),
                    a["source_id"],
                    a["text"],
                    a.get("chapter"),
                    a.get("section"),
                    a.get("learning_outcome_ref"),
                    _json_dumps(list(a.get("tags") or [])),
                    a.get("order_index", i),
                ])
        return len(assertions)

    def save_questions(self, questions: list[dict[str, Any]]) -> int:
        """Insert questions; ``assertion_id`` defaults to NULL."""
        with self._lock:
            for i, q in enumerate(questions):
                self._conn.execute("""
                    INSERT INTO content_questions
                    (question_id, source_id, question_text, chapter, section,
                     learning_outcome_ref, tags, sort_order, assertion_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [
                    q.get("question_id") or _uuid(),
                    q["source_id"],
                    q["text"],
                    q.get("chapter"),
                    q.get("section"),
                    q.get("learning_outcome_ref"),
                    _json_dumps(list(q.get("tags") or [])),
                    q.get("sort_order", i),
                    q.get("assertion_id"),
                ])
        return len(questions)

    def save_vocabulary(self, entries: list[dict[str, Any]]) -> int:
        """Insert vocabulary entries; ``assertion_id`` defaults to NULL."""
        with self._lock:
            for i, v in enumerate(entries):
                self._conn.execute("""
                    INSERT INTO content_vocabulary
                    (vocabulary_id, source_id, term, definition, chapter, topic,
                     tags, sort_order, assertion_id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [
                    v.get("vocabulary_id") or _uuid(),
                    v["source_id"],
                    v["term"],
                    v.get("definition", ""),
                    v.get("chapter"),
                    v.get("topic"),
                    _json_dumps(list(v.get("tags") or [])),
                    v.get("sort_order", i),
                    v.get("assertion_id"),
                ])
        return len(entries)

    # ─── Linking reads ────────────────────────────────────────────

    def list_assertions(self, source_id: str) -> list[Assertion]:
        """All assertions of a source with an embedding-presence flag.

        The vector itself is not loaded. Ordered by ``order_index`` then id.
        """
        try:
            rows = self._fetchall("""
                SELECT assertion_id, source_id, assertion_text, chapter, section,
                       learning_outcome_ref, tags, (embedding IS NOT NULL) AS has_embedding
                FROM content_assertions
                WHERE source_id = ?
                ORDER BY order_index, assertion_id
            """, [source_id])
        except duckdb.Error as exc:
            raise StoreLoadError(f"Failed to load assertions for {source_id}: {exc}") from exc
        return [
            Assertion(
                assertion_id=r[0],
                source_id=r[1],
                text=r[2],
                chapter=r[3],
                section=r[4],
                learning_outcome_ref=r[5],
                tags=_decode_tags(r[6]),
                has_embedding=bool(r[7]),
            )
            for r in rows
        ]

    def list_unlinked(self, source_id: str, kind: ItemKind | str) -> list[LinkableItem]:
        """Items of *kind* for a source whose back-reference is NULL."""
        kind = ItemKind(kind)
        try:
            if kind is ItemKind.QUESTION:
                rows = self._fetchall("""
                    SELECT question_id, source_id, question_text, chapter, section,
                           learning_outcome_ref, tags
                    FROM content_questions
                    WHERE source_id = ? AND assertion_id IS NULL
                    ORDER BY sort_order, question_id
                """, [source_id])
                return [
                    question_item(
                        r[0], r[1], r[2],
                        chapter=r[3], section=r[4], learning_outcome_ref=r[5],
                        tags=_decode_tags(r[6]),
                    )
                    for r in rows
                ]
            rows = self._fetchall("""
                SELECT vocabulary_id, source_id, term, definition, chapter, tags
                FROM content_vocabulary
                WHERE source_id = ? AND assertion_id IS NULL
                ORDER BY sort_order, vocabulary_id
            """, [source_id])
        except duckdb.Error as exc:
            raise StoreLoadError(
                f"Failed to load unlinked {kind.value} items for {source_id}: {exc}"
            ) from exc
        return [
            vocabulary_item(r[0], r[1], r[2], r[3], chapter=r[4], tags=_decode_tags(r[5]))
            for r in rows
        ]

    # ─── Linking writes ───────────────────────────────────────────

    def set_back_reference(
        self, kind: ItemKind | str, item_id: str, assertion_id: str,
    ) -> bool:
        """Set an item's NULL back-reference to *assertion_id*.

        Never overwrites an existing back-reference. The assertion must
        belong to the item's source.

        Returns:
            True if the item was linked, False if it was already linked.

        Raises:
            ContentStoreError: unknown item, unknown assertion, or an
                assertion from another source.
        """
        table, id_col = _ITEM_TABLES[ItemKind(kind)]
        with self._lock:
            try:
                updated = self._conn.execute(f"""
                    UPDATE {table}
                    SET assertion_id = ?, linked_at = current_timestamp
                    WHERE {id_col} = ?
                      AND assertion_id IS NULL
                      AND source_id = (
                          SELECT source_id FROM content_assertions WHERE assertion_id = ?
                      )
                    RETURNING {id_col}
                """, [assertion_id, item_id, assertion_id]).fetchall()
            except duckdb.Error as exc:
                raise ContentStoreError(f"Failed to link {item_id}: {exc}") from exc
            if updated:
                return True

            item = self._conn.execute(
                f"SELECT source_id, assertion_id FROM {table} WHERE {id_col} = ?",
                [item_id],
            ).fetchone()
            if item is None:
                raise ContentStoreError(f"Unknown {ItemKind(kind).value} {item_id}")
            if item[1] is not None:
                return False
            assertion = self._conn.execute(
                "SELECT source_id FROM content_assertions WHERE assertion_id = ?",
                [assertion_id],
            ).fetchone()
            if assertion is None:
                raise ContentStoreError(f"Unknown assertion {assertion_id}")
            raise ContentStoreError(
                f"Assertion {assertion_id} belongs to source {assertion[0]}, "
                f"not {item[0]}"
            )

    def get_back_reference(self, kind: ItemKind | str, item_id: str) -> str | None:
        table, id_col = _ITEM_TABLES[ItemKind(kind)]
        row = self._fetchone(
            f"SELECT assertion_id FROM {table} WHERE {id_col} = ?", [item_id],
        )
        return row[0] if row else None

    def link_counts(self, source_id: str) -> dict[str, dict[str, int]]:
        """Linked/unlinked totals per kind for a source."""
        counts: dict[str, dict[str, int]] = {}
        for kind, (table, _id_col) in _ITEM_TABLES.items():
            row = self._fetchone(f"""
                SELECT COUNT(assertion_id), COUNT(*) - COUNT(assertion_id)
                FROM {table} WHERE source_id = ?
            """, [source_id])
            linked, unlinked = row if row else (0, 0)
            counts[kind.value] = {"linked": int(linked), "unlinked": int(unlinked)}
        return counts

    # ─── Embeddings ───────────────────────────────────────────────

    def save_assertion_embeddings(self, embeddings: list[dict[str, Any]]) -> int:
        count = 0
        with self._lock:
            for emb in embeddings:
                rows = self._conn.execute("""
                    UPDATE content_assertions
                    SET embedding = ?, embedding_model = ?, embedding_text_hash = ?
                    WHERE assertion_id = ?
                    RETURNING assertion_id
                """, [
                    emb["embedding"], emb.get("model_version"),
                    emb.get("text_hash"), emb["assertion_id"],
                ]).fetchall()
                count += len(rows)
        return count

    def assertion_has_embedding(self, assertion_id: str) -> bool:
        row = self._fetchone(
            "SELECT embedding IS NOT NULL FROM content_assertions WHERE assertion_id = ?",
            [assertion_id],
        )
        return bool(row and row[0])

    def get_assertion_embedding(self, assertion_id: str) -> bytes | None:
        row = self._fetchone(
            "SELECT embedding FROM content_assertions WHERE assertion_id = ?",
            [assertion_id],
        )
        if row is None or row[0] is None:
            return None
        return bytes(row[0])

    def cosine_similarity(self, vector: bytes, assertion_id: str) -> float | None:
        """Cosine similarity of *vector* to a stored assertion embedding.

        Returns None when the assertion has no embedding.
        """
        stored = self.get_assertion_embedding(assertion_id)
        if stored is None:
            return None
        return cosine_similarity(vector, stored)

    # ─── System settings ──────────────────────────────────────────

    def get_setting(self, key: str) -> Any | None:
        """Decoded JSON value of a setting, or None if unset."""
        row = self._fetchone("SELECT value FROM system_settings WHERE key = ?", [key])
        if row is None:
            return None
        return orjson.loads(row[0])

    def save_setting(self, key: str, value: Any) -> None:
        self._execute("""
            INSERT OR REPLACE INTO system_settings (key, value, updated_at)
            VALUES (?, ?, current_timestamp)
        """, [key, _json_dumps(value)])

    def list_settings(self, prefix: str = "") -> dict[str, Any]:
        rows = self._fetchall(
            "SELECT key, value FROM system_settings WHERE key LIKE ? ORDER BY key",
            [f"{prefix}%"],
        )
        return {k: orjson.loads(v) for k, v in rows}

    # ─── Linking tasks ────────────────────────────────────────────

    def submit_linking_task(self, source_id: str) -> str:
        """Queue a linking run for a source.

        Reuses a pending or running task for the same source, so at most
        one run per source is queued at a time.
        """
        with self._lock:
            row = self._conn.execute("""
                SELECT task_id FROM linking_tasks
                WHERE source_id = ? AND status IN ('pending', 'running')
                ORDER BY submitted_at LIMIT 1
            """, [source_id]).fetchone()
            if row is not None:
                return str(row[0])
            task_id = _uuid()
            self._conn.execute("""
                INSERT INTO linking_tasks (task_id, source_id, status, submitted_at)
                VALUES (?, ?, 'pending', current_timestamp)
            """, [task_id, source_id])
            return task_id

    def claim_linking_task(self) -> LinkingTask | None:
        """Move the oldest pending task to running and return it."""
        with self._lock:
            row = self._conn.execute("""
                UPDATE linking_tasks SET status = 'running', started_at = current_timestamp
                WHERE status = 'pending' AND task_id = (
                    SELECT task_id FROM linking_tasks WHERE status = 'pending'
                    ORDER BY submitted_at, task_id LIMIT 1
                ) RETURNING *
            """).fetchone()
            if row is None:
                return None
            cols = [d[0] for d in self._conn.description]
        return LinkingTask.from_row(_to_dict(cols, row))

    def update_task_cursor(self, task_id: str, cursor: dict[str, Any]) -> None:
        self._execute(
            "UPDATE linking_tasks SET cursor_json = ? WHERE task_id = ?",
            [_json_dumps(cursor), task_id],
        )

    def complete_linking_task(self, task_id: str, result: dict[str, Any]) -> None:
        self._execute("""
            UPDATE linking_tasks SET status = 'completed', result_json = ?,
            completed_at = current_timestamp WHERE task_id = ?
        """, [_json_dumps(result), task_id])

    def requeue_linking_task(self, task_id: str, result: dict[str, Any]) -> None:
        """Return an interrupted task to pending, keeping its cursor.

        *result* is the partial summary of the interrupted run.
        """
        self._execute("""
            UPDATE linking_tasks SET status = 'pending', result_json = ?,
            started_at = NULL WHERE task_id = ?
        """, [_json_dumps(result), task_id])

    def fail_linking_task(self, task_id: str, error: str) -> None:
        self._execute("""
            UPDATE linking_tasks SET status = 'failed', error_message = ?,
            completed_at = current_timestamp WHERE task_id = ?
        """, [error, task_id])

    def get_linking_task(self, task_id: str) -> LinkingTask | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM linking_tasks WHERE task_id = ?", [task_id],
            ).fetchone()
            if row is None:
                return None
            cols = [d[0] for d in self._conn.description]
        return LinkingTask.from_row(_to_dict(cols, row))

    def list_linking_tasks(
        self, *, status: TaskStatus | str | None = None, limit: int = 50,
    ) -> list[LinkingTask]:
        sql = "SELECT * FROM linking_tasks"
        params: list[Any] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(TaskStatus(status).value)
        sql += " ORDER BY submitted_at DESC, task_id LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
            cols = [d[0] for d in self._conn.description]
        return [LinkingTask.from_row(_to_dict(cols, r)) for r in rows]

    def reset_stale_tasks(self) -> int:
        """Return tasks left running by a crashed worker to pending.

        Safe because linking runs are idempotent: a re-run only touches
        items that are still unlinked.
        """
        rows = self._fetchall("""
            UPDATE linking_tasks SET status = 'pending', started_at = NULL
            WHERE status = 'running' RETURNING task_id
        """)
        return len(rows)

    # ─── Lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        """Close the DuckDB connection."""
        if self._conn:
            with contextlib.suppress(duckdb.Error):
                self._conn.close()
            self._conn = None

    def __enter__(self) -> ContentStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

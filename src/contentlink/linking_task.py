"""Background linking tasks.

A linking run triggered after an extraction pass is recorded as a row in
``linking_tasks`` rather than started fire-and-forget. The row moves
``pending → running → completed | failed`` and carries a progress cursor
(``phase``, ``kind``, ``processed``, ``total``) updated while the run
progresses, so operators can see where a run is. A crashed or interrupted
run is returned to pending and executed again.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import orjson

if TYPE_CHECKING:
    from contentlink.link_content import ContentLinker, LinkingResult

log = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def _decode(raw: Any) -> dict[str, Any]:
    if not raw:
        return {}
    if isinstance(raw, dict):
        return raw
    decoded = orjson.loads(raw)
    return decoded if isinstance(decoded, dict) else {}


def _iso(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


@dataclass(frozen=True, slots=True)
class LinkingTask:
    """Snapshot of one ``linking_tasks`` row."""

    task_id: str
    source_id: str
    status: TaskStatus
    cursor: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    submitted_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def finished(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> LinkingTask:
        return cls(
            task_id=str(row["task_id"]),
            source_id=str(row["source_id"]),
            status=TaskStatus(row["status"]),
            cursor=_decode(row.get("cursor_json")),
            result=_decode(row.get("result_json")),
            error_message=row.get("error_message"),
            submitted_at=_iso(row.get("submitted_at")),
            started_at=_iso(row.get("started_at")),
            completed_at=_iso(row.get("completed_at")),
        )


class LinkingTaskRunner:
    """Executes claimed linking tasks and records their outcome.

    Parameters
    ----------
    store:
        A ``ContentStore`` holding the ``linking_tasks`` queue.
    linker_factory:
        Builds the ``ContentLinker`` for a task. Called once per task so
        settings edited between runs take effect.
    should_stop:
        Checked by the linker between item chunks. A run stopped with items
        left unprocessed goes back to pending with its cursor and partial
        result kept, so the next claim picks up the unlinked remainder.
    """

    def __init__(
        self,
        store: Any,
        linker_factory: Callable[[], ContentLinker],
        *,
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        self._store = store
        self._linker_factory = linker_factory
        self._should_stop = should_stop

    def run(self, task: LinkingTask) -> LinkingTask:
        """Run a claimed task to completion or failure.

        Failures are recorded on the task row, not raised.
        """
        log.info("Running linking task %s for source %s", task.task_id, task.source_id)

        def _progress(cursor: dict[str, Any]) -> None:
            self._store.update_task_cursor(task.task_id, cursor)

        try:
            linker = self._linker_factory()
            result: LinkingResult = linker.link_content_for_source(
                task.source_id,
                should_stop=self._should_stop,
                progress=_progress,
            )
        except Exception as exc:
            log.error("Linking task %s failed: %s", task.task_id, exc)
            self._store.fail_linking_task(task.task_id, f"{type(exc).__name__}: {exc}")
        else:
            if result.skipped > 0:
                # stopped mid-run; the next claim links what is still unlinked
                self._store.requeue_linking_task(task.task_id, result.to_dict())
                log.info(
                    "Linking task %s interrupted with %d item(s) unprocessed; returned to pending",
                    task.task_id, result.skipped,
                )
                refreshed = self._store.get_linking_task(task.task_id)
                return refreshed if refreshed is not None else task
            self._store.complete_linking_task(task.task_id, result.to_dict())
            log.info(
                "Linking task %s completed: %d question(s), %d vocabulary term(s) linked",
                task.task_id, result.questions_linked, result.vocabulary_linked,
            )
        refreshed = self._store.get_linking_task(task.task_id)
        return refreshed if refreshed is not None else task

    def run_pending(self, limit: int | None = None) -> list[LinkingTask]:
        """Claim and run pending tasks until the queue is empty or *limit* is hit."""
        finished: list[LinkingTask] = []
        while limit is None or len(finished) < limit:
            if self._should_stop is not None and self._should_stop():
                break
            task = self._store.claim_linking_task()
            if task is None:
                break
            finished.append(self.run(task))
        return finished

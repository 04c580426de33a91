#!/usr/bin/env python3
"""Linking worker: runs queued content-linking tasks.

Polls the ``linking_tasks`` table in ``content.duckdb``. Extraction jobs
submit a task per source once questions/vocabulary are written; this worker
claims each task, runs one linking pass and records the summary (or the
error) on the task row.

**Crash recovery**: on startup, tasks left ``running`` by a previous worker
are reset to ``pending``. Re-running is safe because linking only writes
NULL back-references.

Usage:
    python3 scripts/linking_worker.py --db data/content.duckdb

    # Drain the queue once and exit
    python3 scripts/linking_worker.py --db data/content.duckdb --once

    # Vector confirmation with the OpenAI-compatible API (OPENAI_API_KEY)
    python3 scripts/linking_worker.py --db data/content.duckdb --embeddings api
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Any

log = logging.getLogger("linking_worker")


class LinkingWorker:
    """Poll loop around ``LinkingTaskRunner``.

    Parameters
    ----------
    db_path:
        Path to content.duckdb (writable).
    embeddings:
        Embedding backend name (``none``, ``mock``, ``api``).
    poll_interval:
        Seconds between poll attempts when idle.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        embeddings: str = "none",
        poll_interval: float = 2.0,
    ) -> None:
        self._db_path = db_path
        self._embeddings = embeddings
        self._poll_interval = poll_interval
        self._running = True
        self._store: Any = None
        self._runner: Any = None

    def open(self) -> None:
        from contentlink.content_store import ContentStore
        from contentlink.embeddings import embedding_model_from_name
        from contentlink.link_content import ContentLinker
        from contentlink.linking_task import LinkingTaskRunner
        from contentlink.settings import SettingsCache, load_linking_config

        self._store = ContentStore(self._db_path)
        model = embedding_model_from_name(self._embeddings)
        cache = SettingsCache()
        store = self._store

        def _linker() -> ContentLinker:
            return ContentLinker(store, load_linking_config(store, cache), embedding_model=model)

        self._runner = LinkingTaskRunner(store, _linker, should_stop=lambda: not self._running)

        recovered = store.reset_stale_tasks()
        if recovered:
            log.info("Recovered %d stale task(s)", recovered)

    def close(self) -> None:
        if self._store is not None:
            self._store.close()
            self._store = None

    def stop(self) -> None:
        """Stop after the current chunk of the current task."""
        self._running = False

    def _handle_signal(self, signum: int, _frame: Any) -> None:
        log.info("Received %s, stopping after current chunk...", signal.Signals(signum).name)
        self._running = False

    def run_once(self) -> int:
        """Drain the queue. Returns the number of tasks run."""
        return len(self._runner.run_pending())

    def poll(self) -> None:
        """Claim and run tasks until stopped."""
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)
        idle_cycles = 0
        while self._running:
            if self.run_once():
                idle_cycles = 0
                continue
            idle_cycles += 1
            # back off up to 5x poll interval while idle
            time.sleep(min(
                self._poll_interval * (1 + idle_cycles * 0.2),
                self._poll_interval * 5,
            ))


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        description="Linking worker: polls linking_tasks and runs content linking",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db", required=True, help="Path to content DuckDB")
    parser.add_argument(
        "--embeddings", choices=("none", "mock", "api"), default="none",
        help="Embedding backend for vector confirmation (default: none)",
    )
    parser.add_argument(
        "--poll-interval", type=float, default=2.0,
        help="Seconds between poll attempts (default: 2.0)",
    )
    parser.add_argument("--once", action="store_true", help="Drain the queue and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    db_path = Path(args.db)
    if not db_path.exists():
        log.error("Content database not found: %s", db_path)
        return 1

    src = Path(__file__).resolve().parents[1] / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))

    worker = LinkingWorker(db_path, embeddings=args.embeddings, poll_interval=args.poll_interval)
    worker.open()
    try:
        if args.once:
            log.info("Ran %d task(s)", worker.run_once())
        else:
            log.info("Worker ready, entering poll loop")
            worker.poll()
    finally:
        worker.close()
        log.info("Worker stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""Run one content-linking pass for a source and print the summary as JSON.

Links the still-unlinked questions and vocabulary terms of a source to
their best-matching assertions. Thresholds come from the store's
``content_linking.*`` settings; flags override them for this run only.

Usage:
    python3 scripts/link_content.py --db data/content.duckdb --source-id src-1

    # Backfill assertion embeddings first, then confirm matches with them
    python3 scripts/link_content.py --db data/content.duckdb --source-id src-1 \\
        --embeddings mock --embed-missing --use-vector

    # Queue the run for linking_worker.py instead of running it here
    python3 scripts/link_content.py --db data/content.duckdb --source-id src-1 --submit

Output (stdout): the run summary with camelCase keys, e.g.
    {"questionsLinked": 12, "questionsOrphaned": 1, ..., "warnings": [...]}
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

import orjson

log = logging.getLogger("link_content")


def dump_json(obj: object) -> None:
    sys.stdout.buffer.write(orjson.dumps(obj, option=orjson.OPT_INDENT_2))
    sys.stdout.buffer.write(b"\n")


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        description="Link orphaned questions and vocabulary to assertions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--db", required=True, help="Path to content DuckDB")
    parser.add_argument("--source-id", required=True, help="Source to link")
    parser.add_argument(
        "--embeddings", choices=("none", "mock", "api"), default="none",
        help="Embedding backend for vector confirmation (default: none)",
    )
    parser.add_argument(
        "--embed-missing", action="store_true",
        help="Embed assertions that have no embedding before linking",
    )
    parser.add_argument(
        "--use-vector", action="store_true", default=None,
        help="Enable vector confirmation for this run",
    )
    parser.add_argument("--min-link-score", type=float, default=None)
    parser.add_argument("--min-keyword-score", type=float, default=None)
    parser.add_argument("--min-vector-similarity", type=float, default=None)
    parser.add_argument(
        "--workers", type=int, default=None,
        help="Concurrent embedding calls during vector confirmation",
    )
    parser.add_argument(
        "--submit", action="store_true",
        help="Queue a linking task instead of running it now",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    return {
        "use_vector_similarity": args.use_vector,
        "min_link_score": args.min_link_score,
        "min_keyword_score": args.min_keyword_score,
        "min_vector_similarity": args.min_vector_similarity,
        "confirm_workers": args.workers,
    }


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    db_path = Path(args.db)
    if not db_path.exists():
        log.error("Content database not found: %s", db_path)
        return 1

    src = Path(__file__).resolve().parents[1] / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))

    from contentlink.content_store import ContentStore, StoreLoadError
    from contentlink.embeddings import AssertionEmbedder, embedding_model_from_name
    from contentlink.link_content import ContentLinker
    from contentlink.settings import linking_config_from_dict, load_linking_config

    with ContentStore(db_path) as store:
        if args.submit:
            task_id = store.submit_linking_task(args.source_id)
            dump_json({"taskId": task_id, "sourceId": args.source_id})
            return 0

        try:
            config = linking_config_from_dict(_overrides(args), base=load_linking_config(store))
        except ValueError as exc:
            log.error("Invalid option: %s", exc)
            return 2

        model = embedding_model_from_name(args.embeddings)
        if args.embed_missing:
            if model is None:
                log.error("--embed-missing requires --embeddings mock|api")
                return 2
            AssertionEmbedder(model, store).embed_missing(args.source_id)

        linker = ContentLinker(store, config, embedding_model=model)
        try:
            result = linker.link_content_for_source(args.source_id)
        except StoreLoadError as exc:
            log.error("%s", exc)
            return 1

    dump_json(result.to_dict())
    return 0


if __name__ == "__main__":
    sys.exit(main())

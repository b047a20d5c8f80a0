"""Command-line interface for managing the runbook corpus.

Usage::

    python -m runbook_rag.cli init-db
    python -m runbook_rag.cli ingest runbooks/ extra/failover.pdf
    python -m runbook_rag.cli search "postgres connection refused" --top-k 3
    python -m runbook_rag.cli stats --json
    python -m runbook_rag.cli delete High-Memory-Usage.md
    python -m runbook_rag.cli seed-demo

Every command builds the same components as the HTTP app from ``.env`` and
``config/config.yaml``, runs once and closes them.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from runbook_rag.config.loader import load_config
from runbook_rag.config.settings import Settings
from runbook_rag.factory import build_components, close_components, initialize_stores
from runbook_rag.models.pipeline import FileStatus, IngestionResult
from runbook_rag.models.rag import IncomingFile
from runbook_rag.utils.errors import RunbookRagError
from runbook_rag.utils.logging import configure_logging

_SUPPORTED_SUFFIXES = {".pdf": "application/pdf", ".md": "text/markdown", ".markdown": "text/markdown"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def collect_files(paths: list[str]) -> list[Path]:
    """Expand *paths* into supported files; directories are walked recursively."""
    found: list[Path] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            found.extend(
                sorted(p for p in path.rglob("*") if p.is_file() and p.suffix.lower() in _SUPPORTED_SUFFIXES)
            )
        elif path.is_file():
            found.append(path)
        else:
            raise FileNotFoundError(f"No such file or directory: {raw}")
    return found


def _load(path: Path) -> IncomingFile:
    return IncomingFile(
        filename=path.name,
        data=path.read_bytes(),
        content_type=_SUPPORTED_SUFFIXES.get(path.suffix.lower()),
    )


def _print_result(result: IngestionResult) -> None:
    print(f"Request {result.request_id}: {result.status.value}")
    for item in result.per_file:
        if item.status is FileStatus.INGESTED:
            detail = f"{item.chunks} chunks"
            if item.chunks_skipped:
                detail += f", {item.chunks_skipped} skipped"
        elif item.error is not None:
            detail = f"{item.error.code} at {item.error.stage}: {item.error.message}"
        else:
            detail = f"{item.chunks_skipped} chunks over budget"
        print(f"  {item.status.value:<9} {item.filename}  ({detail})")
    print(f"  Total chunks:  {result.total_chunks}")
    print(f"  Verified:      {result.verified_searchable}")
    print(f"  Latency:       {result.latency_ms:.0f} ms")


def _dump(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


async def _handle_init_db(args: argparse.Namespace, components: dict[str, Any]) -> int:
    await initialize_stores(components)
    await components["schema_guard"].ensure(components["document_store"])
    print("Schema ready.")
    return 0


async def _handle_ingest(args: argparse.Namespace, components: dict[str, Any]) -> int:
    paths = collect_files(args.paths)
    if not paths:
        print("No .pdf, .md or .markdown files found.", file=sys.stderr)
        return 1

    batch_size = components["limits"].max_files
    results: list[IngestionResult] = []
    for start in range(0, len(paths), batch_size):
        batch = [_load(p) for p in paths[start : start + batch_size]]
        results.append(await components["pipeline"].ingest(batch))

    if args.json:
        _dump([r.model_dump(mode="json") for r in results])
    else:
        for result in results:
            _print_result(result)
    return 0 if any(r.files_processed for r in results) else 1


async def _handle_search(args: argparse.Namespace, components: dict[str, Any]) -> int:
    request_id, previews, latency_ms = await components["query_service"].search(
        args.query,
        top_k=args.top_k,
        filename_scope=args.scope,
    )
    if args.json:
        _dump(
            {
                "request_id": request_id,
                "results": [p.model_dump() for p in previews],
                "latency_ms": latency_ms,
            }
        )
        return 0

    if not previews:
        print("No results.")
        return 0
    for rank, preview in enumerate(previews, start=1):
        print(
            f"{rank}. {preview.filename} #{preview.chunk_index}  "
            f"distance={preview.distance:.4f} keywords={preview.keyword_score}"
        )
        print(f"   {preview.text_preview}")
    print(f"({latency_ms:.0f} ms)")
    return 0


async def _handle_stats(args: argparse.Namespace, components: dict[str, Any]) -> int:
    stats = await components["document_store"].get_stats()
    if args.json:
        _dump(stats.model_dump())
        return 0

    print("Corpus Statistics")
    print("=" * 40)
    print(f"  Documents:        {stats.total_documents}")
    print(f"  Unique filenames: {stats.total_unique_filenames}")
    print(f"  Chunks:           {stats.total_chunks}")
    if stats.chunks_per_filename:
        print("\n  Chunks per file:")
        for filename, count in sorted(stats.chunks_per_filename.items()):
            print(f"    {filename:<40} {count}")
    return 0


async def _handle_delete(args: argparse.Namespace, components: dict[str, Any]) -> int:
    deleted = await components["document_store"].delete_document(args.filename)
    if not deleted:
        print(f"No document named '{args.filename}'.", file=sys.stderr)
        return 1
    print(f"Deleted {args.filename}.")
    return 0


async def _handle_seed_demo(args: argparse.Namespace, components: dict[str, Any]) -> int:
    deleted, result = await components["demo_seeder"].seed()
    print(f"Removed {deleted} existing demo documents.")
    _print_result(result)
    return 0 if result.files_processed else 1


_HANDLERS = {
    "init-db": _handle_init_db,
    "ingest": _handle_ingest,
    "search": _handle_search,
    "stats": _handle_stats,
    "delete": _handle_delete,
    "seed-demo": _handle_seed_demo,
}


async def _run(args: argparse.Namespace, app_settings: Settings) -> int:
    components = build_components(app_settings, load_config(app_settings.config_path))
    try:
        if app_settings.auto_migrate and args.command != "init-db":
            await initialize_stores(components)
        return await _HANDLERS[args.command](args, components)
    except RunbookRagError as exc:
        stage = f" (stage: {exc.stage})" if exc.stage else ""
        print(f"Error [{exc.code}]{stage}: {exc}", file=sys.stderr)
        return 2
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    finally:
        await close_components(components)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the corpus CLI."""
    parser = argparse.ArgumentParser(
        prog="runbook-rag",
        description="Index and search incident runbooks.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Corpus commands")

    subparsers.add_parser("init-db", help="Create tables and verify the schema")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest files or directories")
    ingest_parser.add_argument("paths", nargs="+", help="Files or directories to ingest")
    ingest_parser.add_argument("--json", action="store_true", help="Print the raw result")

    search_parser = subparsers.add_parser("search", help="Search the corpus")
    search_parser.add_argument("query", help="Natural-language query")
    search_parser.add_argument("--top-k", type=int, default=None, dest="top_k", help="Results wanted")
    search_parser.add_argument(
        "--scope",
        nargs="+",
        default=None,
        metavar="FILENAME",
        help="Restrict results to these filenames",
    )
    search_parser.add_argument("--json", action="store_true", help="Print the raw result")

    stats_parser = subparsers.add_parser("stats", help="Show corpus statistics")
    stats_parser.add_argument("--json", action="store_true", help="Print the raw result")

    delete_parser = subparsers.add_parser("delete", help="Delete one document and its chunks")
    delete_parser.add_argument("filename", help="Stored filename, e.g. High-Memory-Usage.md")

    subparsers.add_parser("seed-demo", help="Replace the bundled demo runbooks")

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """CLI entry point: parse arguments, load settings and dispatch."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    app_settings = Settings()
    # Log lines share stdout with --json output.
    log_level = "WARNING" if getattr(args, "json", False) else app_settings.log_level
    configure_logging(log_level=log_level, json_output=False)

    try:
        exit_code = asyncio.run(_run(args, app_settings))
    except RunbookRagError as exc:
        print(f"Error [{exc.code}]: {exc}", file=sys.stderr)
        exit_code = 2
    sys.exit(exit_code)


if __name__ == "__main__":
    main()

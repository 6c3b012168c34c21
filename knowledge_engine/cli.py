"""
`knowledge-engine` command line interface.

Commands
--------
knowledge-engine ingest notes.md --tag work        -- ingest a file (or stdin with -)
knowledge-engine ingest --text "Cats are mammals." -- ingest literal text
knowledge-engine bulk docs.json                    -- ingest a JSON array of documents
knowledge-engine search "<query>"                  -- hybrid search
knowledge-engine search "<query>" --method mmr --option lambda=0.3
knowledge-engine search "<query>" --tag engineering --from 2024-01-01
knowledge-engine list --limit 20                   -- newest entries first
knowledge-engine show <entry_id>                   -- entry plus its chunks
knowledge-engine delete <entry_id>                 -- delete an entry and its chunks
knowledge-engine stats                             -- counts and breakdowns
knowledge-engine migrate ./knowledge               -- import legacy JSON fact files
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from typing import Optional

from tqdm import tqdm

from .chunking import STRATEGIES
from .config import Config
from .engine import KnowledgeEngine
from .errors import KnowledgeBaseError
from .models import MetadataFilter
from .retrieval import METHODS

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _open_engine(args: argparse.Namespace) -> KnowledgeEngine:
    """Build the engine from --config / --db and the environment."""
    config = Config.load(getattr(args, "config", None), db_path=getattr(args, "db", None))
    return KnowledgeEngine.from_config(config)


def _parse_options(pairs: Optional[list[str]]) -> dict:
    """Turn ``["lambda=0.3", "sub_method=hybrid"]`` into a typed dict."""
    options: dict = {}
    for pair in pairs or []:
        if "=" not in pair:
            print(
                f"Invalid --option format '{pair}'. Use: --option key=value",
                file=sys.stderr,
            )
            sys.exit(1)
        key, raw = pair.split("=", 1)
        try:
            value = json.loads(raw)
        except ValueError:
            value = raw
        options[key.strip()] = value
    return options


def _read_text(args: argparse.Namespace) -> str:
    if args.text is not None:
        return args.text
    if args.file in (None, "-"):
        return sys.stdin.read()
    with open(args.file, "r", encoding="utf-8") as f:
        return f.read()


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _preview(text: str, width: int = 200) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= width else flat[: width - 3] + "..."


# ---------------------------------------------------------------------------
# Sub-command handlers
# ---------------------------------------------------------------------------

def _cmd_ingest(args: argparse.Namespace) -> None:
    """Ingest one document."""
    text = _read_text(args)
    with _open_engine(args) as engine:
        receipt = engine.ingest(
            text,
            title=args.title,
            source=args.source,
            confidence=args.confidence,
            tags=args.tags,
            content_type=args.content_type,
            strategy=args.strategy,
            strategy_options=_parse_options(args.options),
        )
    if args.json:
        _print_json(receipt.to_dict())
        return
    print(f"Ingested {receipt.id}")
    print(f"  Title    : {receipt.title}")
    print(f"  Chunks   : {receipt.chunk_count} ({receipt.chunk_strategy})")
    if receipt.tags:
        print(f"  Tags     : {', '.join(receipt.tags)}")


def _cmd_bulk(args: argparse.Namespace) -> None:
    """Ingest a JSON array of ``{text, title, source, ...}`` objects."""
    with open(args.file, "r", encoding="utf-8") as f:
        documents = json.load(f)
    if not isinstance(documents, list):
        print(f"{args.file}: expected a JSON array of documents", file=sys.stderr)
        sys.exit(1)

    defaults = {
        "source": args.source,
        "confidence": args.confidence,
        "tags": args.tags,
        "strategy": args.strategy,
    }
    defaults = {k: v for k, v in defaults.items() if v}

    t0 = time.perf_counter()
    pbar = tqdm(total=len(documents), unit="doc", desc="Ingesting")
    with _open_engine(args) as engine:
        receipts, failures = engine.ingest_many(
            documents, defaults, on_progress=lambda _i: pbar.update(1),
        )
    pbar.close()
    elapsed = time.perf_counter() - t0

    print(
        f"\nBulk ingest complete:\n"
        f"  Ingested : {len(receipts)}\n"
        f"  Chunks   : {sum(r.chunk_count for r in receipts)}\n"
        f"  Skipped  : {len(documents) - len(receipts) - len(failures)}\n"
        f"  Failed   : {len(failures)}\n"
        f"  Time     : {elapsed:.1f}s"
    )
    for index, exc in failures:
        print(f"  [{index}] {exc.kind.value}: {exc}", file=sys.stderr)
    if failures:
        sys.exit(1)


def _cmd_search(args: argparse.Namespace) -> None:
    """Search the knowledge base."""
    metadata_filter = MetadataFilter.build(
        source=args.source,
        confidence=args.confidence,
        content_type=args.content_type,
        tags=args.tags,
        date_from=args.date_from,
        date_to=args.date_to,
    )
    t0 = time.perf_counter()
    with _open_engine(args) as engine:
        results = engine.search(
            args.query,
            method=args.method,
            limit=args.limit,
            metadata_filter=None if metadata_filter.is_empty() else metadata_filter,
            options=_parse_options(args.options),
        )
    elapsed_ms = (time.perf_counter() - t0) * 1000

    if args.json:
        _print_json(results.to_dict())
        return

    for kind, message in results.warnings:
        print(f"warning ({kind.value}): {message}", file=sys.stderr)
    if not results:
        print(f"No results found for: {args.query!r}")
        return

    print(f"\n{results.method} results for: {args.query!r}  [{len(results)} result(s)]")
    print("-" * 70)
    for i, r in enumerate(results, 1):
        print(f"\n  [{i}] {r.title}")
        print(f"       Score  : {r.score:.4f}")
        print(f"       Entry  : {r.parent_id}  (chunk {r.chunk_index + 1}/{r.chunk_count})")
        if r.tags:
            print(f"       Tags   : {', '.join(r.tags)}")
        print(f"       Text   : {_preview(r.text)}")
    print(f"\n  Search time: {elapsed_ms:.1f}ms")


def _cmd_list(args: argparse.Namespace) -> None:
    with _open_engine(args) as engine:
        entries, total = engine.list_entries(args.offset, args.limit)
    if args.json:
        _print_json({"total": total, "entries": [e.to_dict() for e in entries]})
        return
    if not entries:
        print("No entries.")
        return
    print(f"\nEntries {args.offset + 1}-{args.offset + len(entries)} of {total}")
    print("-" * 70)
    for e in entries:
        print(f"  {e.id}  {e.created_at}  {e.chunk_count:>3} chunk(s)  {_preview(e.title, 60)}")


def _cmd_show(args: argparse.Namespace) -> None:
    with _open_engine(args) as engine:
        data = engine.get_entry_with_chunks(args.entry_id)
    if args.json:
        _print_json(data)
        return
    print(f"\n{data['title']}")
    print("=" * 70)
    print(f"  Id         : {data['id']}")
    print(f"  Source     : {data['source']}  ({data['confidence']})")
    print(f"  Type       : {data['content_type']}")
    print(f"  Strategy   : {data['chunk_strategy']}")
    print(f"  Created    : {data['created_at']}")
    if data["tags"]:
        print(f"  Tags       : {', '.join(data['tags'])}")
    for c in data["chunks"]:
        print(f"\n  --- chunk {c['chunk_index']} ---")
        print(f"  {c['text']}")


def _cmd_delete(args: argparse.Namespace) -> None:
    with _open_engine(args) as engine:
        removed = engine.delete_entry(args.entry_id)
    print(f"Deleted {args.entry_id} ({removed} chunk(s))")


def _cmd_stats(args: argparse.Namespace) -> None:
    with _open_engine(args) as engine:
        stats = engine.stats()
    if args.json:
        _print_json(stats)
        return
    print("\nKnowledge Base")
    print("=" * 40)
    print(f"  Entries     : {stats['entry_count']}")
    print(f"  Chunks      : {stats['chunk_count']}")
    print(f"  Avg/entry   : {stats['avg_chunks_per_entry']}")
    print(f"  Model       : {stats['embedding_model']} ({stats['vector_dimensions']}d)")
    print(f"  Provider    : {stats['provider_status']}")
    for label, key in (("strategy", "by_strategy"), ("source", "by_source"),
                       ("confidence", "by_confidence")):
        if stats[key]:
            print(f"\n  By {label}:")
            for name, count in stats[key].items():
                print(f"    {name:<14} {count}")
    print()


def _cmd_migrate(args: argparse.Namespace) -> None:
    from .migrate import migrate_json_dir

    with _open_engine(args) as engine:
        summary = migrate_json_dir(engine, args.directory)
    print(f"Migrated {summary['migrated']} file(s), {summary['failed']} failed")
    if summary["failed"]:
        sys.exit(1)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _add_metadata_args(p: argparse.ArgumentParser, defaults: bool) -> None:
    p.add_argument("--source", default="user" if defaults else None,
                   help="Origin of the knowledge (e.g. user, web, email)")
    p.add_argument("--confidence", default="medium" if defaults else None,
                   help="Confidence label (e.g. low, medium, high)")
    p.add_argument("--tag", dest="tags", action="append", default=None,
                   metavar="TAG", help="Tag; repeat for several")


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the top-level argument parser."""
    parser = argparse.ArgumentParser(
        prog="knowledge-engine",
        description="Local knowledge base: chunk, embed, store and search text",
    )
    parser.add_argument(
        "--config", default=None, metavar="PATH",
        help="YAML config file (default: ./.knowledge_engine.yaml or ~/.knowledge_engine.yaml)",
    )
    parser.add_argument(
        "--db", default=None, metavar="PATH",
        help="SQLite database path (overrides config)",
    )
    subparsers = parser.add_subparsers(dest="cmd", metavar="COMMAND")
    subparsers.required = True

    # --- ingest ---
    ingest_p = subparsers.add_parser("ingest", help="Ingest one document")
    ingest_p.add_argument("file", nargs="?", default=None,
                          help="File to ingest, or - for stdin (default)")
    ingest_p.add_argument("--text", default=None, help="Literal text to ingest")
    ingest_p.add_argument("--title", default=None)
    _add_metadata_args(ingest_p, defaults=True)
    ingest_p.add_argument("--content-type", dest="content_type", default=None,
                          help="Content type (default: fact under 500 chars, else document)")
    ingest_p.add_argument("--strategy", choices=STRATEGIES, default=None,
                          help="Chunking strategy (default from config)")
    ingest_p.add_argument("--option", dest="options", action="append", metavar="KEY=VALUE",
                          help="Chunking option, e.g. --option chunk_size=400")
    ingest_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")
    ingest_p.set_defaults(func=_cmd_ingest)

    # --- bulk ---
    bulk_p = subparsers.add_parser("bulk", help="Ingest a JSON array of documents")
    bulk_p.add_argument("file", help="JSON file holding a list of {text, title, ...} objects")
    _add_metadata_args(bulk_p, defaults=False)
    bulk_p.add_argument("--strategy", choices=STRATEGIES, default=None)
    bulk_p.set_defaults(func=_cmd_bulk)

    # --- search ---
    search_p = subparsers.add_parser("search", help="Search the knowledge base")
    search_p.add_argument("query", help="Search query")
    search_p.add_argument("--method", default=None,
                          help=f"One of {', '.join(METHODS)} (default from config)")
    search_p.add_argument("--limit", type=int, default=None,
                          help="Maximum number of results (default from config)")
    _add_metadata_args(search_p, defaults=False)
    search_p.add_argument("--content-type", dest="content_type", default=None)
    search_p.add_argument("--from", dest="date_from", default=None, metavar="DATE",
                          help="Only chunks created on or after DATE (ISO-8601)")
    search_p.add_argument("--to", dest="date_to", default=None, metavar="DATE",
                          help="Only chunks created on or before DATE (ISO-8601)")
    search_p.add_argument("--option", dest="options", action="append", metavar="KEY=VALUE",
                          help="Method option, e.g. --option vector_weight=0.5")
    search_p.add_argument("--json", action="store_true", help="Machine-readable JSON output")
    search_p.set_defaults(func=_cmd_search)

    # --- list ---
    list_p = subparsers.add_parser("list", help="List entries, newest first")
    list_p.add_argument("--offset", type=int, default=0)
    list_p.add_argument("--limit", type=int, default=50)
    list_p.add_argument("--json", action="store_true")
    list_p.set_defaults(func=_cmd_list)

    # --- show ---
    show_p = subparsers.add_parser("show", help="Show an entry and its chunks")
    show_p.add_argument("entry_id")
    show_p.add_argument("--json", action="store_true")
    show_p.set_defaults(func=_cmd_show)

    # --- delete ---
    delete_p = subparsers.add_parser("delete", help="Delete an entry and its chunks")
    delete_p.add_argument("entry_id")
    delete_p.set_defaults(func=_cmd_delete)

    # --- stats ---
    stats_p = subparsers.add_parser("stats", help="Show knowledge base statistics")
    stats_p.add_argument("--json", action="store_true")
    stats_p.set_defaults(func=_cmd_stats)

    # --- migrate ---
    migrate_p = subparsers.add_parser("migrate", help="Import legacy JSON fact files")
    migrate_p.add_argument("directory", help="Directory holding *.json fact files")
    migrate_p.set_defaults(func=_cmd_migrate)

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> None:
    """
    Main entry point for ``knowledge-engine``.

    Parameters
    ----------
    argv:
        Argument list without the program name.  Defaults to sys.argv if None.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    # Configure logging if not already configured
    if not logging.root.handlers:
        level = Config.load(args.config).LOG_LEVEL
        logging.basicConfig(
            level=getattr(logging, level, logging.WARNING),
            format="%(levelname)s  %(name)s  %(message)s",
        )

    try:
        args.func(args)
    except KnowledgeBaseError as exc:
        print(f"Error ({exc.kind.value}): {exc}", file=sys.stderr)
        sys.exit(1)
    except (OSError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()

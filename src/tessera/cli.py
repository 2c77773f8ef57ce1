"""Tessera CLI -- search the note index and report its status."""

import argparse
import json
import logging
import sqlite3
import sys
import time
from datetime import datetime, timezone

from tessera import config


def _print_table(headers, rows):
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    line = "  ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
    print(line)
    print("  ".join("-" * w for w in widths))
    for row in rows:
        print("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)))


def _print_kv(pairs):
    width = max(len(k) for k, _ in pairs)
    for key, value in pairs:
        print(f"  {key.ljust(width)}  {value}")


def _format_epoch(epoch: float) -> str:
    if not epoch:
        return "-"
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def _open_store():
    from tessera.sqlite_store import NoteStore

    try:
        return NoteStore()
    except (sqlite3.Error, OSError) as e:
        print(f"Error: cannot open index at {config.db_path()}: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_search(args):
    """Search notes: hybrid when embeddings are available, full-text otherwise."""
    from tessera.embeddings import embed_query
    from tessera.models import SearchOptions
    from tessera.search import SearchError, search_with_fallback

    query_text = " ".join(args.query_text)
    if not query_text.strip():
        print("Usage: tessera search <query text>", file=sys.stderr)
        sys.exit(1)

    options = SearchOptions(
        top_k=args.top_k,
        domain=args.domain or "",
        workstream=args.workstream or "",
        tags=list(args.tag or []),
    )

    start = time.monotonic()
    store = _open_store()
    try:
        results = search_with_fallback(store, query_text, options, embed=embed_query)
    except SearchError as e:
        print(f"Error: search failed: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        store.close()
    elapsed = time.monotonic() - start

    if args.json:
        out = [r.to_dict() for r in results]
        print(json.dumps({"results": out, "count": len(out), "elapsed_s": round(elapsed, 3)}, indent=2))
        return

    if not results:
        print(f'No results for "{query_text}" ({elapsed:.2f}s)')
        return

    rows = []
    for r in results:
        rows.append((f"{r.score:.3f}", r.content_type or "note", r.title[:60], r.path))
    _print_table(["Score", "Type", "Title", "Path"], rows)
    print(f"\n{len(results)} result(s) ({elapsed:.2f}s)")


def cmd_status(args):
    """Show index size, content-type mix, and search capabilities."""
    from tessera.embeddings import get_embedding_info
    from tessera.models import NoData

    store = _open_store()
    try:
        report = store.index_report()
    except sqlite3.Error as e:
        print(f"Error: cannot read index: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        store.close()

    if args.json:
        if isinstance(report, NoData):
            print(json.dumps({"status": "no_data", "reason": report.reason}, indent=2))
        else:
            print(json.dumps({"status": "ok", "report": report.to_dict()}, indent=2))
        return

    print("Tessera Status")
    if isinstance(report, NoData):
        _print_kv([("Database", str(config.db_path())), ("Index", f"no data ({report.reason})")])
        return

    info = get_embedding_info()
    types = ", ".join(f"{k}={v}" for k, v in sorted(report.content_types.items()))
    _print_kv([
        ("Database", str(config.db_path())),
        ("Notes", str(report.note_count)),
        ("Chunks", str(report.chunk_count)),
        ("Vectors", f"{report.vector_count} ({report.embedding_dim}-dim)"),
        ("Content types", types or "-"),
        ("Vector search", "sqlite-vec" if report.vectors_available else "brute-force fallback"),
        ("Full-text", "FTS5" if report.fts_available else "LIKE fallback"),
        ("Model", info["onnx_model_dir"] or "not installed"),
        ("Oldest note", _format_epoch(report.oldest_modified)),
        ("Newest note", _format_epoch(report.newest_modified)),
    ])


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="tessera",
        description="Tessera -- hybrid search over AI-agent notes",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    search_parser = subparsers.add_parser("search", help="Search notes by meaning and keywords")
    search_parser.add_argument("query_text", nargs="+", help="Search text")
    search_parser.add_argument("--top-k", type=int, default=10, help="Max results (default: 10, max: 100)")
    search_parser.add_argument("--domain", help="Only notes in this domain")
    search_parser.add_argument("--workstream", help="Only notes in this workstream")
    search_parser.add_argument("--tag", action="append", help="Only notes carrying this tag (repeatable, any-of)")
    search_parser.add_argument("--json", action="store_true", help="Output as JSON")

    status_parser = subparsers.add_parser("status", help="Show index size and search capabilities")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")

    args = parser.parse_args(argv)

    level = "DEBUG" if args.verbose else config.log_level()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    commands = {
        "search": cmd_search,
        "status": cmd_status,
    }

    if args.command in commands:
        commands[args.command](args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()

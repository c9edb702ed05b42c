"""Export project memories to JSON/Markdown and import them back.

    memory-export export --format markdown --output memories.md
    memory-export import memories.md --project my-project
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .config import resolve_data_dir, resolve_project_id
from .db import DB, DB_FILENAME, fetch_one, now_ms
from .queries import MemoryQueries
from .types import MEMORY_SCOPES, Memory
from .vector import NoopVecService

LOCAL_DB_PATH = Path(".opencode") / "state" / "opencode" / "memory" / DB_FILENAME

_SCOPE_HEADER_RE = re.compile(r"^##\s+(\w+)(?:s)?\s+\(\d+\)$", re.IGNORECASE)
_MEMORY_HEADER_RE = re.compile(r"^###\s+\[(\d+)\]\s+-\s+Created\s+(\d{4}-\d{2}-\d{2})")
_HEADING_LINE_RE = re.compile(r"^#.*$", re.MULTILINE)
_EXPORTED_ON_RE = re.compile(r"^Exported on \d{4}-\d{2}-\d{2}\s*$")


class ImportParseError(ValueError):
    pass


def resolve_default_db_path() -> str:
    local = Path.cwd() / LOCAL_DB_PATH
    if local.exists():
        return str(local)
    return str(Path(resolve_data_dir()) / DB_FILENAME)


def _utc_date(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def format_as_json(memories: List[Memory]) -> str:
    return json.dumps([m.to_dict() for m in memories], indent=2)


def format_as_markdown(memories: List[Memory]) -> str:
    lines = ["# Memory Export", "", f"Exported on {_utc_date(now_ms())}", ""]
    for scope in MEMORY_SCOPES:
        items = [m for m in memories if m.scope == scope]
        if not items:
            continue
        lines += [f"## {scope.capitalize()}s ({len(items)})", ""]
        for m in items:
            lines += [f"### [{m.id}] - Created {_utc_date(m.created_at)}", "", m.content, ""]
    return "\n".join(lines)


def _new_memory(project_id: str, scope: str, content: str, created_at: int, updated_at: int,
                file_path: Optional[str] = None) -> Memory:
    return Memory(
        id=0,
        project_id=project_id,
        scope=scope,
        content=content,
        file_path=file_path,
        created_at=created_at,
        updated_at=updated_at,
    )


def parse_json_import(content: str, project_id: str) -> List[Memory]:
    try:
        data = json.loads(content)
    except ValueError as e:
        raise ImportParseError(str(e)) from e
    if not isinstance(data, list):
        raise ImportParseError("Invalid JSON format: expected array of memories")

    now = now_ms()
    out = []
    for item in data:
        if not isinstance(item, dict) or not isinstance(item.get("content"), str):
            raise ImportParseError("Invalid JSON format: every memory needs a content string")
        scope = item.get("scope")
        out.append(
            _new_memory(
                project_id=item.get("projectId") or project_id,
                scope=scope if scope in MEMORY_SCOPES else "context",
                content=item["content"],
                created_at=item.get("createdAt") or now,
                updated_at=item.get("updatedAt") or now,
                file_path=item.get("filePath") or None,
            )
        )
    return out


def _scope_from_header(word: str) -> str:
    word = word.lower()
    if word.startswith("convention"):
        return "convention"
    if word.startswith("decision"):
        return "decision"
    return "context"


def _date_to_ms(date: str) -> int:
    try:
        return int(datetime.strptime(date, "%Y-%m-%d").replace(tzinfo=timezone.utc).timestamp() * 1000)
    except ValueError:
        return now_ms()


def parse_markdown_import(content: str, project_id: str) -> List[Memory]:
    """Parse the layout written by ``format_as_markdown``.

    Text with none of its headers becomes a single ``context`` memory.
    """
    memories: List[Memory] = []
    scope = "context"
    created_at = now_ms()
    buf: List[str] = []

    def flush() -> None:
        text = "\n".join(buf).strip()
        if text:
            memories.append(_new_memory(project_id, scope, text, created_at, created_at))
        buf.clear()

    for line in content.split("\n"):
        m = _SCOPE_HEADER_RE.match(line)
        if m:
            flush()
            scope = _scope_from_header(m.group(1))
            continue
        m = _MEMORY_HEADER_RE.match(line)
        if m:
            flush()
            created_at = _date_to_ms(m.group(2))
            continue
        if line.startswith("#") and not line.startswith("##"):
            continue
        if not memories and not buf and _EXPORTED_ON_RE.match(line):
            continue
        if line.strip() or buf:
            buf.append(line)
    flush()

    if not memories and content.strip():
        fallback = _HEADING_LINE_RE.sub("", content).strip()
        if fallback:
            now = now_ms()
            memories.append(_new_memory(project_id, "context", fallback, now, now))
    return memories


async def export_memories(
    db_path: str,
    project_id: str,
    scope: Optional[str] = None,
    limit: int = 1000,
    offset: int = 0,
) -> List[Memory]:
    queries = MemoryQueries(DB(db_path), NoopVecService())
    return await queries.list_by_project(project_id, scope=scope, limit=limit, offset=offset)


async def import_memories(
    db_path: str, project_id: str, memories: List[Memory], force: bool = False
) -> Dict[str, int]:
    """Insert ``memories`` under ``project_id``; exact duplicates are skipped unless ``force``."""
    db = DB(db_path)
    await db.init()
    imported = skipped = 0
    async with db.connect() as conn:
        for memory in memories:
            if not force:
                row = await fetch_one(
                    conn,
                    "SELECT id FROM memories WHERE project_id = ? AND content = ? LIMIT 1",
                    (project_id, memory.content),
                )
                if row:
                    skipped += 1
                    continue
            now = now_ms()
            await conn.execute(
                "INSERT INTO memories (project_id, scope, content, file_path, access_count, "
                "last_accessed_at, created_at, updated_at) VALUES (?, ?, ?, ?, 0, NULL, ?, ?)",
                (
                    project_id,
                    memory.scope,
                    memory.content,
                    memory.file_path,
                    memory.created_at or now,
                    memory.updated_at or now,
                ),
            )
            imported += 1
        await conn.commit()
    return {"imported": imported, "skipped": skipped}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="memory-export", description="Export or import project memories")
    sub = parser.add_subparsers(dest="command")

    exp = sub.add_parser("export", help="Export memories from the database")
    exp.add_argument("--format", "-f", choices=["json", "markdown"], default="json")
    exp.add_argument("--output", "-o", help="Output file (stdout when omitted)")
    exp.add_argument("--project", "-p", help="Project ID (detected from git when omitted)")
    exp.add_argument("--scope", "-s", choices=list(MEMORY_SCOPES))
    exp.add_argument("--limit", "-l", type=int, default=1000)
    exp.add_argument("--offset", type=int, default=0)
    exp.add_argument("--db", "--db-path", dest="db", help="Path to the database file")

    imp = sub.add_parser("import", help="Import memories into the database")
    imp.add_argument("file", help="Input file ('-' for stdin)")
    imp.add_argument("--format", "-f", choices=["json", "markdown"])
    imp.add_argument("--project", "-p", help="Project ID (detected from git when omitted)")
    imp.add_argument("--force", action="store_true", help="Import duplicates too")
    imp.add_argument("--db", "--db-path", dest="db", help="Path to the database file")
    return parser


def _fail(message: str) -> int:
    print(message, file=sys.stderr)
    return 1


def _read_input(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")


def run_export(args: argparse.Namespace) -> int:
    db_path = args.db or resolve_default_db_path()
    if not os.path.exists(db_path):
        return _fail(f"Database not found at {db_path}. Start the memory plugin first to initialize memories.")
    project_id = args.project or resolve_project_id()

    memories = asyncio.run(export_memories(db_path, project_id, args.scope, args.limit, args.offset))
    output = format_as_markdown(memories) if args.format == "markdown" else format_as_json(memories)

    if args.output:
        Path(args.output).write_text(output, encoding="utf-8")
        print(f"Exported {len(memories)} memories to {args.output}")
    else:
        print(output)
    return 0


def run_import(args: argparse.Namespace) -> int:
    db_path = args.db or resolve_default_db_path()
    if not os.path.exists(db_path):
        return _fail(f"Database not found at {db_path}. Start the memory plugin first to initialize memories.")

    try:
        content = _read_input(args.file)
    except OSError:
        return _fail(f"Failed to read file: {args.file}")

    fmt = args.format or ("markdown" if Path(args.file).suffix.lower() == ".md" else "json")
    project_id = args.project or resolve_project_id()

    try:
        if fmt == "markdown":
            memories = parse_markdown_import(content, project_id)
        else:
            memories = parse_json_import(content, project_id)
    except ImportParseError as e:
        return _fail(f"Failed to parse {fmt} file: {e}")

    if not memories:
        print("No memories found to import.")
        return 0

    counts = asyncio.run(import_memories(db_path, project_id, memories, force=args.force))
    print(f"Import complete: {counts['imported']} imported, {counts['skipped']} skipped")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "import":
        return run_import(args)
    if args.command is None:
        args = parser.parse_args(["export"])
    return run_export(args)


if __name__ == "__main__":
    raise SystemExit(main())

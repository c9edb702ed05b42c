from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence

import aiosqlite

logger = logging.getLogger("memory_engine.db")

DB_FILENAME = "memory.db"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memories (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  project_id TEXT NOT NULL,
  scope TEXT NOT NULL,
  content TEXT NOT NULL,
  file_path TEXT,
  access_count INTEGER NOT NULL DEFAULT 0,
  last_accessed_at INTEGER,
  created_at INTEGER NOT NULL,
  updated_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_memories_project_id ON memories(project_id);
CREATE INDEX IF NOT EXISTS idx_memories_scope ON memories(scope);

CREATE TABLE IF NOT EXISTS session_state (
  key TEXT PRIMARY KEY,
  project_id TEXT NOT NULL,
  data TEXT NOT NULL,
  expires_at INTEGER,
  created_at INTEGER NOT NULL,
  updated_at INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_session_state_project_id ON session_state(project_id);
CREATE INDEX IF NOT EXISTS idx_session_state_expires_at ON session_state(expires_at);

CREATE TABLE IF NOT EXISTS plugin_metadata (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS migrations (
  id TEXT PRIMARY KEY,
  description TEXT NOT NULL,
  applied_at INTEGER NOT NULL
);
"""

# Owned by the vector backends; declared here so relational queries can
# LEFT JOIN against it whichever backend created it.
EMBEDDINGS_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memory_embeddings (
  memory_id INTEGER PRIMARY KEY,
  project_id TEXT NOT NULL,
  embedding BLOB NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_memory_embeddings_project_id ON memory_embeddings(project_id);
"""


def now_ms() -> int:
    return int(time.time() * 1000)


async def _has_column(conn: Any, table: str, col: str) -> bool:
    rows = await fetch_all(conn, f"PRAGMA table_info({table});")
    return any(r[1] == col for r in rows)


async def _drop_status_column(conn: Any) -> None:
    if not await _has_column(conn, "memories", "status"):
        return
    indexes = await fetch_all(
        conn, "SELECT name FROM sqlite_master WHERE type='index' AND tbl_name='memories'"
    )
    for idx in indexes:
        if "status" in str(idx[0]):
            await conn.execute(f"DROP INDEX IF EXISTS {idx[0]}")
    await conn.execute("ALTER TABLE memories DROP COLUMN status")


MIGRATIONS = [
    ("001", "Remove status column from memories table", _drop_status_column),
]


@dataclass
class DB:
    path: str
    busy_timeout_ms: int = 5000

    @classmethod
    def for_data_dir(cls, data_dir: str) -> "DB":
        return cls(str(Path(data_dir) / DB_FILENAME))

    @asynccontextmanager
    async def connect(self, load_vec: bool = False):
        """Async context manager returning a configured aiosqlite connection.

        With ``load_vec`` the sqlite-vec extension is loaded into the
        connection; failures propagate so callers can pick another backend.
        """
        Path(self.path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.path) as conn:
            await conn.execute("PRAGMA journal_mode=WAL;")
            await conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)};")
            await conn.execute("PRAGMA synchronous=NORMAL;")
            if load_vec:
                import sqlite_vec

                await conn.enable_load_extension(True)
                await conn.load_extension(sqlite_vec.loadable_path())
                await conn.enable_load_extension(False)
            conn.row_factory = aiosqlite.Row
            yield conn

    async def init(self) -> None:
        """Initialize DB schema and apply migrations (idempotent)."""
        async with self.connect() as conn:
            await conn.executescript(SCHEMA_SQL)
            for migration_id, description, apply in MIGRATIONS:
                row = await fetch_one(conn, "SELECT id FROM migrations WHERE id = ?", (migration_id,))
                if row:
                    continue
                await apply(conn)
                await conn.execute(
                    "INSERT INTO migrations (id, description, applied_at) VALUES (?, ?, ?)",
                    (migration_id, description, now_ms()),
                )
                logger.info("Applied migration %s: %s", migration_id, description)
            await conn.commit()

    async def table_exists(self, name: str, conn: Optional[Any] = None) -> bool:
        sql = "SELECT name FROM sqlite_master WHERE type='table' AND name=?"
        if conn is not None:
            return (await fetch_one(conn, sql, (name,))) is not None
        async with self.connect() as c:
            return (await fetch_one(c, sql, (name,))) is not None


async def fetch_one(conn: Any, sql: str, args: Sequence[Any] = ()) -> Optional[Any]:
    cur = await conn.execute(sql, args)
    row = await cur.fetchone()
    await cur.close()
    return row


async def fetch_all(conn: Any, sql: str, args: Sequence[Any] = ()) -> list[Any]:
    cur = await conn.execute(sql, args)
    rows = await cur.fetchall()
    await cur.close()
    return rows

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .db import DB, fetch_all, fetch_one, now_ms
from .types import CreateMemoryInput, Memory, MemorySearchResult, MemoryStats
from .vector import VecService

logger = logging.getLogger("memory_engine.queries")

MEMORY_COLUMNS = (
    "id, project_id, scope, content, file_path, access_count, last_accessed_at, created_at, updated_at"
)
FALLBACK_DISTANCE = 1.0


def _where(conditions: List[str]) -> str:
    return f"WHERE {' AND '.join(conditions)}" if conditions else ""


class MemoryQueries:
    """Relational access to memories plus the matching vector-store calls."""

    def __init__(self, db: DB, vec: VecService):
        self.db = db
        self.vec = vec

    async def create_in_db(self, conn: Any, data: CreateMemoryInput) -> int:
        now = now_ms()
        cur = await conn.execute(
            "INSERT INTO memories (project_id, scope, content, file_path, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (data.project_id, data.scope, data.content, data.file_path, now, now),
        )
        memory_id = int(cur.lastrowid)
        await cur.close()
        return memory_id

    async def get_by_id(self, memory_id: int) -> Optional[Memory]:
        async with self.db.connect() as conn:
            row = await fetch_one(conn, f"SELECT {MEMORY_COLUMNS} FROM memories WHERE id = ?", (int(memory_id),))
        return Memory.from_row(row) if row else None

    async def get_by_content(self, project_id: str, content: str, conn: Any = None) -> Optional[Memory]:
        sql = f"SELECT {MEMORY_COLUMNS} FROM memories WHERE project_id = ? AND content = ? LIMIT 1"
        if conn is not None:
            row = await fetch_one(conn, sql, (project_id, content))
        else:
            async with self.db.connect() as c:
                row = await fetch_one(c, sql, (project_id, content))
        return Memory.from_row(row) if row else None

    async def exists_by_content(self, project_id: str, content: str) -> bool:
        return (await self.get_by_content(project_id, content)) is not None

    async def update(self, memory_id: int, content: Optional[str] = None, scope: Optional[str] = None) -> None:
        updates: List[str] = []
        values: List[Any] = []
        if content is not None:
            updates.append("content = ?")
            values.append(content)
        if scope is not None:
            updates.append("scope = ?")
            values.append(scope)
        if not updates:
            return
        updates.append("updated_at = ?")
        values.extend([now_ms(), int(memory_id)])
        async with self.db.connect() as conn:
            await conn.execute(f"UPDATE memories SET {', '.join(updates)} WHERE id = ?", values)
            await conn.commit()

    async def update_embedding(self, memory_id: int, embedding: List[float]) -> None:
        """Replace a memory's vector: delete first, then insert."""
        if not self.vec.available:
            return
        await self.vec.delete(memory_id)
        if not embedding:
            return
        async with self.db.connect() as conn:
            row = await fetch_one(conn, "SELECT project_id FROM memories WHERE id = ?", (int(memory_id),))
        if row:
            await self.vec.insert(embedding, memory_id, row["project_id"])

    async def delete(self, memory_id: int) -> None:
        if self.vec.available:
            await self.vec.delete(memory_id)
        async with self.db.connect() as conn:
            await conn.execute("DELETE FROM memories WHERE id = ?", (int(memory_id),))
            await conn.commit()

    async def track_access(self, memory_ids: List[int]) -> None:
        if not memory_ids:
            return
        now = now_ms()
        async with self.db.connect() as conn:
            await conn.executemany(
                "UPDATE memories SET access_count = access_count + 1, last_accessed_at = ? WHERE id = ?",
                [(now, int(i)) for i in memory_ids],
            )
            await conn.commit()

    async def list_by_project(
        self, project_id: str, scope: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> List[Memory]:
        return await self.list_all(project_id=project_id, scope=scope, limit=limit, offset=offset)

    async def list_all(
        self,
        project_id: Optional[str] = None,
        scope: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Memory]:
        conditions: List[str] = []
        args: List[Any] = []
        if project_id:
            conditions.append("project_id = ?")
            args.append(project_id)
        if scope:
            conditions.append("scope = ?")
            args.append(scope)
        args.extend([int(limit), int(offset)])
        async with self.db.connect() as conn:
            rows = await fetch_all(
                conn,
                f"SELECT {MEMORY_COLUMNS} FROM memories {_where(conditions)} "
                "ORDER BY updated_at DESC, id DESC LIMIT ? OFFSET ?",
                args,
            )
        return [Memory.from_row(r) for r in rows]

    async def recency_results(
        self, project_id: Optional[str], scope: Optional[str], limit: Optional[int]
    ) -> List[MemorySearchResult]:
        memories = await self.list_all(project_id=project_id, scope=scope, limit=limit or 20)
        return [MemorySearchResult(m, FALLBACK_DISTANCE) for m in memories]

    async def _by_ids(self, ids: List[int]) -> Dict[int, Memory]:
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        async with self.db.connect() as conn:
            rows = await fetch_all(
                conn, f"SELECT {MEMORY_COLUMNS} FROM memories WHERE id IN ({placeholders})", ids
            )
        return {int(r["id"]): Memory.from_row(r) for r in rows}

    async def search(
        self,
        embedding: List[float],
        project_id: Optional[str] = None,
        scope: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[MemorySearchResult]:
        """Vector search, degrading to recency order with a uniform distance."""
        if not self.vec.available:
            return await self.recency_results(project_id, scope, limit)
        try:
            hits = await self.vec.search(embedding, project_id, scope, limit or 10)
            if not hits:
                return await self.recency_results(project_id, scope, limit)
            memories = await self._by_ids([h.memory_id for h in hits])
        except Exception as e:
            logger.warning("Vector search failed, listing by recency: %s", e)
            return await self.recency_results(project_id, scope, limit)

        results = [
            MemorySearchResult(memories[h.memory_id], h.distance) for h in hits if h.memory_id in memories
        ]
        results.sort(key=lambda r: r.distance)
        return results

    async def find_similar(
        self, embedding: List[float], project_id: str, threshold: float = 0.15, limit: int = 5
    ) -> List[MemorySearchResult]:
        if not self.vec.available:
            return []
        try:
            hits = await self.vec.find_similar(embedding, project_id, threshold, limit)
            memories = await self._by_ids([h.memory_id for h in hits])
        except Exception as e:
            logger.warning("Similarity lookup failed: %s", e)
            return []
        results = [
            MemorySearchResult(memories[h.memory_id], h.distance) for h in hits if h.memory_id in memories
        ]
        results.sort(key=lambda r: r.distance)
        return results

    async def get_stats(self, project_id: str) -> MemoryStats:
        async with self.db.connect() as conn:
            rows = await fetch_all(
                conn,
                "SELECT scope, COUNT(*) AS count FROM memories WHERE project_id = ? GROUP BY scope",
                (project_id,),
            )
        by_scope = {r["scope"]: int(r["count"]) for r in rows}
        return MemoryStats(project_id=project_id, total=sum(by_scope.values()), by_scope=by_scope)

    async def delete_by_project(self, project_id: str) -> None:
        if self.vec.available:
            await self.vec.delete_by_project(project_id)
        async with self.db.connect() as conn:
            await conn.execute("DELETE FROM memories WHERE project_id = ?", (project_id,))
            await conn.commit()

    async def delete_by_file_path(self, project_id: str, file_path: str) -> None:
        async with self.db.connect() as conn:
            if self.vec.available:
                rows = await fetch_all(
                    conn,
                    "SELECT id FROM memories WHERE project_id = ? AND file_path = ?",
                    (project_id, file_path),
                )
                ids = [int(r["id"]) for r in rows]
                if ids:
                    await self.vec.delete_by_memory_ids(ids)
            await conn.execute(
                "DELETE FROM memories WHERE project_id = ? AND file_path = ?", (project_id, file_path)
            )
            await conn.commit()

    async def count_by_project(self, project_id: str) -> int:
        async with self.db.connect() as conn:
            row = await fetch_one(conn, "SELECT COUNT(*) FROM memories WHERE project_id = ?", (project_id,))
        return int(row[0]) if row else 0

    async def count_all(self) -> int:
        async with self.db.connect() as conn:
            row = await fetch_one(conn, "SELECT COUNT(*) FROM memories")
        return int(row[0]) if row else 0

    async def get_memories_without_embeddings(
        self, project_id: Optional[str] = None, limit: int = 50
    ) -> List[Memory]:
        async with self.db.connect() as conn:
            if not await self.db.table_exists("memory_embeddings", conn):
                conditions = ["project_id = ?"] if project_id else []
                sql = (
                    f"SELECT {MEMORY_COLUMNS} FROM memories {_where(conditions)} "
                    "ORDER BY created_at ASC LIMIT ?"
                )
            else:
                conditions = ["e.memory_id IS NULL"]
                if project_id:
                    conditions.append("m.project_id = ?")
                cols = ", ".join(f"m.{c.strip()}" for c in MEMORY_COLUMNS.split(","))
                sql = (
                    f"SELECT {cols} FROM memories m "
                    "LEFT JOIN memory_embeddings e ON m.id = e.memory_id "
                    f"{_where(conditions)} ORDER BY m.created_at ASC LIMIT ?"
                )
            args: List[Any] = [project_id] if project_id else []
            rows = await fetch_all(conn, sql, args + [int(limit)])
        return [Memory.from_row(r) for r in rows]

    async def count_memories_without_embeddings(self, project_id: Optional[str] = None) -> int:
        async with self.db.connect() as conn:
            if not await self.db.table_exists("memory_embeddings", conn):
                conditions = ["project_id = ?"] if project_id else []
                sql = f"SELECT COUNT(*) FROM memories {_where(conditions)}"
            else:
                conditions = ["e.memory_id IS NULL"]
                if project_id:
                    conditions.append("m.project_id = ?")
                sql = (
                    "SELECT COUNT(*) FROM memories m "
                    f"LEFT JOIN memory_embeddings e ON m.id = e.memory_id {_where(conditions)}"
                )
            row = await fetch_one(conn, sql, [project_id] if project_id else [])
        return int(row[0]) if row else 0

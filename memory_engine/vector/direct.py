from __future__ import annotations

import logging
from typing import List, Optional

import sqlite_vec

from ..db import DB, EMBEDDINGS_SCHEMA_SQL, fetch_all, fetch_one
from .base import VecSearchResult, VecService

logger = logging.getLogger("memory_engine.vector.direct")

_DISTANCE_SQL = """
SELECT e.memory_id AS memory_id, vec_distance_cosine(e.embedding, ?) AS distance
FROM memory_embeddings e
JOIN memories m ON m.id = e.memory_id
WHERE vec_length(e.embedding) = ?
"""


class DirectVecService(VecService):
    """sqlite-vec loaded into our own aiosqlite connections.

    Embeddings are float32 blobs in a plain table, so relational queries can
    join against it even on connections without the extension. Rows whose
    length differs from the initialised dimensions (left over from another
    model) are ignored until reindexed.
    """

    name = "direct"

    def __init__(self, db: DB):
        self.db = db
        self.dimensions = 0
        self._loaded = False

    @property
    def available(self) -> bool:
        return self._loaded

    async def probe(self) -> bool:
        """Load the extension once; False when this interpreter can't."""
        try:
            async with self.db.connect(load_vec=True) as conn:
                row = await fetch_one(conn, "SELECT vec_version()")
            logger.info("sqlite-vec %s loaded in-process", row[0])
            self._loaded = True
        except Exception as e:
            logger.info("sqlite-vec unavailable in-process: %s", e)
            self._loaded = False
        return self._loaded

    async def initialize(self, dimensions: int) -> None:
        self.dimensions = int(dimensions)
        if not self._loaded:
            return
        async with self.db.connect(load_vec=True) as conn:
            await conn.executescript(EMBEDDINGS_SCHEMA_SQL)
            await conn.commit()

    async def insert(self, embedding: List[float], memory_id: int, project_id: str) -> None:
        if not self._loaded:
            return
        async with self.db.connect(load_vec=True) as conn:
            await conn.execute(
                "INSERT OR REPLACE INTO memory_embeddings (memory_id, project_id, embedding) VALUES (?, ?, ?)",
                (int(memory_id), project_id, sqlite_vec.serialize_float32(embedding)),
            )
            await conn.commit()

    async def delete(self, memory_id: int) -> None:
        if not self._loaded:
            return
        async with self.db.connect(load_vec=True) as conn:
            await conn.execute("DELETE FROM memory_embeddings WHERE memory_id = ?", (int(memory_id),))
            await conn.commit()

    async def delete_by_project(self, project_id: str) -> None:
        if not self._loaded:
            return
        async with self.db.connect(load_vec=True) as conn:
            await conn.execute("DELETE FROM memory_embeddings WHERE project_id = ?", (project_id,))
            await conn.commit()

    async def delete_by_memory_ids(self, memory_ids: List[int]) -> None:
        if not self._loaded or not memory_ids:
            return
        placeholders = ",".join("?" for _ in memory_ids)
        async with self.db.connect(load_vec=True) as conn:
            await conn.execute(
                f"DELETE FROM memory_embeddings WHERE memory_id IN ({placeholders})",
                [int(x) for x in memory_ids],
            )
            await conn.commit()

    async def search(
        self,
        embedding: List[float],
        project_id: Optional[str] = None,
        scope: Optional[str] = None,
        limit: int = 10,
    ) -> List[VecSearchResult]:
        if not self._loaded:
            return []
        sql = _DISTANCE_SQL
        args: list = [sqlite_vec.serialize_float32(embedding), len(embedding)]
        if project_id:
            sql += " AND e.project_id = ?"
            args.append(project_id)
        if scope:
            sql += " AND m.scope = ?"
            args.append(scope)
        sql += " ORDER BY distance ASC LIMIT ?"
        args.append(int(limit))
        async with self.db.connect(load_vec=True) as conn:
            rows = await fetch_all(conn, sql, args)
        return [VecSearchResult(int(r["memory_id"]), float(r["distance"])) for r in rows]

    async def find_similar(
        self, embedding: List[float], project_id: str, threshold: float, limit: int
    ) -> List[VecSearchResult]:
        if not self._loaded:
            return []
        sql = (
            f"SELECT memory_id, distance FROM ({_DISTANCE_SQL} AND m.project_id = ?) "
            "WHERE distance < ? ORDER BY distance ASC LIMIT ?"
        )
        args = [
            sqlite_vec.serialize_float32(embedding),
            len(embedding),
            project_id,
            float(threshold),
            int(limit),
        ]
        async with self.db.connect(load_vec=True) as conn:
            rows = await fetch_all(conn, sql, args)
        return [VecSearchResult(int(r["memory_id"]), float(r["distance"])) for r in rows]

    async def count(self) -> int:
        if not self._loaded:
            return 0
        async with self.db.connect(load_vec=True) as conn:
            if not await self.db.table_exists("memory_embeddings", conn):
                return 0
            row = await fetch_one(conn, "SELECT COUNT(*) FROM memory_embeddings")
        return int(row[0]) if row else 0

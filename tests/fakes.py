"""Deterministic stand-ins for the embedding model and the vector index."""

from __future__ import annotations

import hashlib
import json
import math
import re
from typing import List, Optional

from memory_engine.db import DB, EMBEDDINGS_SCHEMA_SQL, fetch_all
from memory_engine.embedding.base import EmbeddingProvider, zero_vector
from memory_engine.vector.base import VecSearchResult, VecService

_WORD_RE = re.compile(r"[a-z0-9]+")


def bag_of_words(text: str, dimensions: int) -> List[float]:
    vec = [0.0] * dimensions
    for word in _WORD_RE.findall(text.lower()):
        h = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16)
        vec[h % dimensions] += 1.0
    norm = math.sqrt(sum(x * x for x in vec))
    if not norm:
        vec[0] = 1.0
        return vec
    return [x / norm for x in vec]


def cosine_distance(a: List[float], b: List[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if not na or not nb:
        return 1.0
    return 1.0 - dot / (na * nb)


class FakeProvider(EmbeddingProvider):
    """Hashes words into buckets; identical texts get identical vectors."""

    def __init__(self, dimensions: int = 64, fail: bool = False):
        self.dimensions = dimensions
        self.fail = fail
        self.calls: List[List[str]] = []
        self.disposed = False

    @property
    def name(self) -> str:
        return f"fake:{self.dimensions}d"

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail:
            return [zero_vector(self.dimensions) for _ in texts]
        return [bag_of_words(t, self.dimensions) for t in texts]

    async def test(self) -> bool:
        return not self.fail

    async def dispose(self) -> None:
        self.disposed = True


class FakeVecService(VecService):
    """Vector store over the real ``memory_embeddings`` table, ranked in Python."""

    name = "fake"

    def __init__(self, db: DB):
        self.db = db
        self.dimensions = 0
        self.inserted: List[int] = []
        self.operations: List[tuple] = []

    @property
    def available(self) -> bool:
        return True

    async def initialize(self, dimensions: int) -> None:
        self.dimensions = dimensions
        async with self.db.connect() as conn:
            await conn.executescript(EMBEDDINGS_SCHEMA_SQL)
            await conn.commit()

    async def insert(self, embedding: List[float], memory_id: int, project_id: str) -> None:
        self.inserted.append(memory_id)
        self.operations.append(("insert", memory_id))
        async with self.db.connect() as conn:
            await conn.execute(
                "INSERT OR REPLACE INTO memory_embeddings (memory_id, project_id, embedding) VALUES (?, ?, ?)",
                (memory_id, project_id, json.dumps(embedding).encode("utf-8")),
            )
            await conn.commit()

    async def _delete_where(self, clause: str, args) -> None:
        async with self.db.connect() as conn:
            await conn.execute(f"DELETE FROM memory_embeddings WHERE {clause}", args)
            await conn.commit()

    async def delete(self, memory_id: int) -> None:
        self.operations.append(("delete", memory_id))
        await self._delete_where("memory_id = ?", (memory_id,))

    async def delete_by_project(self, project_id: str) -> None:
        await self._delete_where("project_id = ?", (project_id,))

    async def delete_by_memory_ids(self, memory_ids: List[int]) -> None:
        for memory_id in memory_ids:
            await self.delete(memory_id)

    async def _ranked(self, embedding, project_id: Optional[str], scope: Optional[str]):
        sql = (
            "SELECT e.memory_id, e.embedding, m.project_id, m.scope FROM memory_embeddings e "
            "JOIN memories m ON m.id = e.memory_id"
        )
        async with self.db.connect() as conn:
            rows = await fetch_all(conn, sql)
        out = []
        for r in rows:
            if project_id is not None and r["project_id"] != project_id:
                continue
            if scope is not None and r["scope"] != scope:
                continue
            stored = json.loads(bytes(r["embedding"]).decode("utf-8"))
            out.append(VecSearchResult(int(r["memory_id"]), cosine_distance(embedding, stored)))
        out.sort(key=lambda h: h.distance)
        return out

    async def search(self, embedding, project_id=None, scope=None, limit=10) -> List[VecSearchResult]:
        return (await self._ranked(embedding, project_id, scope))[:limit]

    async def find_similar(self, embedding, project_id, threshold, limit) -> List[VecSearchResult]:
        hits = await self._ranked(embedding, project_id, None)
        return [h for h in hits if h.distance < threshold][:limit]

    async def count(self) -> int:
        async with self.db.connect() as conn:
            rows = await fetch_all(conn, "SELECT COUNT(*) FROM memory_embeddings")
        return int(rows[0][0])


async def make_fake_vec(db: DB, data_dir: str, dimensions: int) -> FakeVecService:
    vec = FakeVecService(db)
    await vec.initialize(dimensions)
    return vec

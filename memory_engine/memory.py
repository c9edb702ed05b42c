from __future__ import annotations

import logging
from typing import List, Optional

from .cache import MemoryCache
from .db import DB
from .embedding import EmbeddingProvider, EmbeddingService, is_zero_vector
from .queries import MemoryQueries
from .types import (
    CreateMemoryInput,
    CreateResult,
    Memory,
    MemoryNotFoundError,
    MemorySearchResult,
    MemoryStats,
    ReindexResult,
)
from .vector import NoopVecService, VecService

logger = logging.getLogger("memory_engine.memory")

DEFAULT_DEDUP_THRESHOLD = 0.25
MIN_DEDUP_THRESHOLD = 0.05
MAX_DEDUP_THRESHOLD = 0.40

REINDEX_LIMIT = 10000
REINDEX_BATCH_SIZE = 50
STATS_TTL = 300


def clamp_dedup_threshold(value: float) -> float:
    return max(MIN_DEDUP_THRESHOLD, min(MAX_DEDUP_THRESHOLD, float(value)))


class MemoryService:
    """CRUD over memories with dedup, caching and reindexing.

    Vector-store trouble never fails a call: writes leave the memory without
    an embedding (picked up later by the sync pass) and reads fall back to
    recency order. Database errors propagate.
    """

    def __init__(
        self,
        db: DB,
        provider: EmbeddingProvider,
        cache: Optional[MemoryCache] = None,
        vec: Optional[VecService] = None,
        embedding_service: Optional[EmbeddingService] = None,
    ):
        self.db = db
        self.provider = provider
        self.cache = cache or MemoryCache()
        self.embeddings = embedding_service or EmbeddingService(provider, self.cache)
        self.vec: VecService = vec or NoopVecService()
        self.queries = MemoryQueries(db, self.vec)
        self.dedup_threshold = DEFAULT_DEDUP_THRESHOLD

    def set_dedup_threshold(self, threshold: float) -> None:
        self.dedup_threshold = clamp_dedup_threshold(threshold)

    def set_vec_service(self, vec: VecService) -> None:
        self.vec = vec
        self.queries.vec = vec

    async def _invalidate(self, project_id: str) -> None:
        await self.cache.invalidate_pattern(f"mem:project:{project_id}:*")

    async def create(self, data: CreateMemoryInput) -> CreateResult:
        existing = await self.queries.get_by_content(data.project_id, data.content)
        if existing is not None:
            return CreateResult(existing.id, deduplicated=True)

        embedding = await self.embeddings.embed_text(data.content)
        usable = not is_zero_vector(embedding)
        if usable:
            similar = await self.queries.find_similar(
                embedding, data.project_id, self.dedup_threshold, 1
            )
            if similar:
                logger.debug(
                    "Memory is %.3f from #%s, treating as duplicate",
                    similar[0].distance, similar[0].memory.id,
                )
                return CreateResult(similar[0].memory.id, deduplicated=True)

        async with self.db.connect() as conn:
            try:
                await conn.execute("BEGIN IMMEDIATE")
                # A concurrent writer may have stored it since the first check.
                raced = await self.queries.get_by_content(data.project_id, data.content, conn=conn)
                if raced is not None:
                    await conn.commit()
                    return CreateResult(raced.id, deduplicated=True)
                memory_id = await self.queries.create_in_db(conn, data)
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

        if usable and self.vec.available:
            try:
                await self.vec.insert(embedding, memory_id, data.project_id)
            except Exception as e:
                logger.error("Failed to insert embedding for memory %s: %s", memory_id, e)

        await self._invalidate(data.project_id)
        return CreateResult(memory_id, deduplicated=False)

    async def update(self, memory_id: int, content: Optional[str] = None, scope: Optional[str] = None) -> None:
        existing = await self.queries.get_by_id(memory_id)
        if existing is None:
            raise MemoryNotFoundError(memory_id)

        await self.queries.update(memory_id, content=content, scope=scope)
        if content is not None:
            embedding = await self.embeddings.embed_text(content)
            if is_zero_vector(embedding):
                # Drop the stale vector; the sync pass re-embeds it later.
                if self.vec.available:
                    await self.vec.delete(memory_id)
            else:
                await self.queries.update_embedding(memory_id, embedding)

        await self._invalidate(existing.project_id)

    async def delete(self, memory_id: int) -> None:
        existing = await self.queries.get_by_id(memory_id)
        if existing is None:
            raise MemoryNotFoundError(memory_id)
        await self.queries.delete(memory_id)
        await self._invalidate(existing.project_id)

    async def get_by_id(self, memory_id: int) -> Optional[Memory]:
        memory = await self.queries.get_by_id(memory_id)
        if memory is not None:
            await self.queries.track_access([memory.id])
        return memory

    async def list_by_project(
        self, project_id: str, scope: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> List[Memory]:
        memories = await self.queries.list_by_project(project_id, scope=scope, limit=limit, offset=offset)
        await self.queries.track_access([m.id for m in memories])
        return memories

    async def list_all(
        self,
        project_id: Optional[str] = None,
        scope: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Memory]:
        memories = await self.queries.list_all(project_id=project_id, scope=scope, limit=limit, offset=offset)
        await self.queries.track_access([m.id for m in memories])
        return memories

    async def search(
        self,
        query: str,
        project_id: Optional[str] = None,
        scope: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[MemorySearchResult]:
        embedding = await self.embeddings.embed_text(query)
        if is_zero_vector(embedding):
            results = await self.queries.recency_results(project_id, scope, limit)
        else:
            results = await self.queries.search(embedding, project_id, scope, limit)
        await self.queries.track_access([r.memory.id for r in results])
        return results

    async def get_stats(self, project_id: str) -> MemoryStats:
        key = f"mem:project:{project_id}:stats"
        cached = await self.cache.get(key)
        if cached is not None:
            return cached
        stats = await self.queries.get_stats(project_id)
        await self.cache.set(key, stats, STATS_TTL)
        return stats

    async def delete_by_project(self, project_id: str) -> None:
        await self.queries.delete_by_project(project_id)
        await self._invalidate(project_id)

    async def delete_by_file_path(self, project_id: str, file_path: str) -> None:
        await self.queries.delete_by_file_path(project_id, file_path)
        await self._invalidate(project_id)

    async def count_by_project(self, project_id: str) -> int:
        return await self.queries.count_by_project(project_id)

    async def count_all(self) -> int:
        return await self.queries.count_all()

    async def get_memories_without_embeddings(self, project_id: Optional[str] = None, limit: int = 50) -> List[Memory]:
        return await self.queries.get_memories_without_embeddings(project_id, limit)

    async def count_memories_without_embeddings(self, project_id: Optional[str] = None) -> int:
        return await self.queries.count_memories_without_embeddings(project_id)

    async def embed_memory(self, memory_id: int, content: str) -> bool:
        """Embed one memory; False when nothing usable was stored."""
        if not self.vec.available:
            return False
        try:
            embedding = await self.embeddings.embed_text(content)
            if is_zero_vector(embedding):
                return False
            await self.queries.update_embedding(memory_id, embedding)
            return True
        except Exception as e:
            logger.warning("Embedding memory %s failed: %s", memory_id, e)
            return False

    async def reindex(self, project_id: Optional[str] = None) -> ReindexResult:
        if project_id:
            memories = await self.queries.list_by_project(project_id, limit=REINDEX_LIMIT)
        else:
            memories = await self.queries.list_all(limit=REINDEX_LIMIT)

        result = ReindexResult(total=len(memories))
        for i in range(0, len(memories), REINDEX_BATCH_SIZE):
            batch = memories[i : i + REINDEX_BATCH_SIZE]
            try:
                embeddings = await self.embeddings.embed_texts([m.content for m in batch])
            except Exception as e:
                logger.error("Reindex batch of %d failed: %s", len(batch), e)
                result.failed += len(batch)
                continue
            for memory, embedding in zip(batch, embeddings):
                if is_zero_vector(embedding):
                    result.failed += 1
                    continue
                try:
                    await self.queries.update_embedding(memory.id, embedding)
                    result.success += 1
                except Exception as e:
                    logger.warning("Reindex of memory %s failed: %s", memory.id, e)
                    result.failed += 1

        await self._invalidate(project_id or "*")
        logger.info(
            "Reindexed %d memories: %d ok, %d failed", result.total, result.success, result.failed
        )
        return result

    async def destroy(self) -> None:
        await self.vec.dispose()
        self.cache.destroy()
        await self.provider.dispose()

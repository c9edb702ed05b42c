from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .memory import MemoryService

logger = logging.getLogger("memory_engine.embedding_sync")

MAX_ITERATIONS = 100
RETRY_DELAY = 0.1


@dataclass
class EmbeddingSyncResult:
    total: int = 0
    embedded: int = 0
    failed: int = 0


class EmbeddingSyncService:
    """Back-fills embeddings for memories stored while the index was down.

    Each pass pulls a batch of embedding-less memories, retries each a few
    times, and stops early when a whole batch fails so a broken provider
    can't keep it spinning.
    """

    def __init__(self, memory_service: MemoryService, batch_size: int = 50, max_retries: int = 3):
        self.memory_service = memory_service
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.sync_in_progress = False

    async def start(self) -> EmbeddingSyncResult:
        logger.info("Starting initial embedding sync")
        return await self.sync_all()

    async def sync_all(self) -> EmbeddingSyncResult:
        if self.sync_in_progress:
            logger.info("Embedding sync already in progress, skipping")
            return EmbeddingSyncResult()
        if not self.memory_service.vec.available:
            logger.info("Vector store unavailable, skipping embedding sync")
            return EmbeddingSyncResult()

        self.sync_in_progress = True
        try:
            result = await self._run(None, retry_delay=0.0)
            logger.info("Embedding sync complete: %d embedded, %d failed", result.embedded, result.failed)
            return result
        finally:
            self.sync_in_progress = False

    async def sync_project(self, project_id: str) -> EmbeddingSyncResult:
        if not self.memory_service.vec.available:
            return EmbeddingSyncResult()
        return await self._run(project_id, retry_delay=RETRY_DELAY)

    async def _embed_with_retries(self, memory_id: int, content: str, retry_delay: float) -> bool:
        for attempt in range(1, self.max_retries + 1):
            if await self.memory_service.embed_memory(memory_id, content):
                return True
            if attempt < self.max_retries:
                logger.debug("Retrying memory %s (attempt %d/%d)", memory_id, attempt + 1, self.max_retries)
                if retry_delay:
                    await asyncio.sleep(retry_delay)
        logger.error("Failed to embed memory %s after %d attempts", memory_id, self.max_retries)
        return False

    async def _run(self, project_id: Optional[str], retry_delay: float) -> EmbeddingSyncResult:
        result = EmbeddingSyncResult()
        try:
            pending = await self.memory_service.count_memories_without_embeddings(project_id)
            iterations = 0
            while pending > 0 and iterations < MAX_ITERATIONS:
                iterations += 1
                batch = await self.memory_service.get_memories_without_embeddings(project_id, self.batch_size)
                if not batch:
                    break
                batch_ok = 0
                for memory in batch:
                    result.total += 1
                    if await self._embed_with_retries(memory.id, memory.content, retry_delay):
                        result.embedded += 1
                        batch_ok += 1
                    else:
                        result.failed += 1

                if batch_ok == 0:
                    logger.error("No memories embedded in this batch, stopping")
                    break

                pending = await self.memory_service.count_memories_without_embeddings(project_id)
                if pending:
                    logger.info(
                        "Embedding sync progress: %d embedded, %d failed, %d remaining",
                        result.embedded, result.failed, pending,
                    )
            if iterations >= MAX_ITERATIONS:
                logger.error("Embedding sync reached %d iterations, stopping", MAX_ITERATIONS)
        except Exception:
            logger.exception("Embedding sync failed%s", f" for project {project_id}" if project_id else "")
        return result

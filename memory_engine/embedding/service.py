from __future__ import annotations

import hashlib
from typing import List, Optional

from ..cache import MemoryCache
from .base import EmbeddingProvider, is_zero_vector, zero_vector

EMBEDDING_TTL = 86400


def embedding_cache_key(text: str) -> str:
    return "emb:" + hashlib.sha256(text.encode("utf-8")).hexdigest()


class EmbeddingService:
    """Content-hash cache in front of an embedding provider."""

    def __init__(self, provider: EmbeddingProvider, cache: MemoryCache):
        self.provider = provider
        self.cache = cache

    async def embed_text(self, text: str) -> List[float]:
        results = await self.embed_texts([text])
        if not results:
            return zero_vector(self.provider.dimensions)
        return results[0]

    async def embed_texts(self, texts: List[str]) -> List[List[float]]:
        results: List[Optional[List[float]]] = [None] * len(texts)
        misses: List[int] = []

        for i, text in enumerate(texts):
            cached = await self.cache.get(embedding_cache_key(text or ""))
            if cached:
                results[i] = cached
            else:
                misses.append(i)

        if misses:
            # Repeated texts in one batch are embedded once.
            unique = list(dict.fromkeys(texts[i] or "" for i in misses))
            embeddings = await self.provider.embed(unique)
            by_text = {}
            for n, text in enumerate(unique):
                vec = embeddings[n] if n < len(embeddings) else zero_vector(self.provider.dimensions)
                by_text[text] = vec
                # Zero vectors mark a provider failure; try again next time.
                if not is_zero_vector(vec):
                    await self.cache.set(embedding_cache_key(text), vec, EMBEDDING_TTL)
            for i in misses:
                results[i] = by_text[texts[i] or ""]

        return [r if r is not None else zero_vector(self.provider.dimensions) for r in results]

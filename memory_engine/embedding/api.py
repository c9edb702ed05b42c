from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import httpx

from .base import EmbeddingProvider, EmbeddingsError, zero_vector

logger = logging.getLogger("memory_engine.embedding.api")

OPENAI_ENDPOINT = "https://api.openai.com/v1/embeddings"
VOYAGE_ENDPOINT = "https://api.voyageai.com/v1/embeddings"

BATCH_SIZE = 100
DEFAULT_DIMENSIONS = 1536


@dataclass(frozen=True)
class ModelDefaults:
    dimensions: int
    endpoint: str


KNOWN_MODELS: Dict[str, ModelDefaults] = {
    "text-embedding-3-small": ModelDefaults(1536, OPENAI_ENDPOINT),
    "text-embedding-3-large": ModelDefaults(3072, OPENAI_ENDPOINT),
    "text-embedding-ada-002": ModelDefaults(1536, OPENAI_ENDPOINT),
    "voyage-code-3": ModelDefaults(1024, VOYAGE_ENDPOINT),
    "voyage-2": ModelDefaults(1536, VOYAGE_ENDPOINT),
}

DEFAULT_MODELS = {"openai": "text-embedding-3-small", "voyage": "voyage-code-3"}
DEFAULT_ENDPOINTS = {"openai": OPENAI_ENDPOINT, "voyage": VOYAGE_ENDPOINT}


def normalize_base_url(base_url: str) -> str:
    trimmed = base_url.rstrip("/")
    if trimmed.endswith("/v1/embeddings"):
        return trimmed
    if trimmed.endswith("/v1"):
        return f"{trimmed}/embeddings"
    return f"{trimmed}/v1/embeddings"


class ApiEmbeddingProvider(EmbeddingProvider):
    def __init__(
        self,
        provider: str,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        dimensions: Optional[int] = None,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.provider = provider
        self.model = model or DEFAULT_MODELS.get(provider, DEFAULT_MODELS["openai"])
        known = KNOWN_MODELS.get(self.model)
        self.dimensions = dimensions or (known.dimensions if known else DEFAULT_DIMENSIONS)
        if base_url:
            self.endpoint = normalize_base_url(base_url)
        elif known:
            self.endpoint = known.endpoint
        else:
            self.endpoint = DEFAULT_ENDPOINTS.get(provider, OPENAI_ENDPOINT)
        self.api_key = api_key or ""
        self.timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        return f"api:{self.model}"

    def _get_headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=10.0), transport=self._transport
        )

    async def _embed_batch(self, client: httpx.AsyncClient, texts: List[str]) -> List[List[float]]:
        r = await client.post(
            self.endpoint,
            json={"model": self.model, "input": texts},
            headers=self._get_headers(),
        )
        if r.status_code >= 400:
            raise EmbeddingsError(f"Embedding API error: {r.status_code} {r.text}")
        data = r.json()
        items = None
        if isinstance(data, dict):
            items = data.get("data") or data.get("embeddings")
        if not isinstance(items, list) or len(items) != len(texts):
            raise EmbeddingsError("Invalid response from embedding API")
        return [[float(x) for x in item["embedding"]] for item in items]

    async def _embed_all(self, texts: List[str]) -> List[List[float]]:
        results: List[List[float]] = []
        async with self._client() as client:
            for i in range(0, len(texts), BATCH_SIZE):
                results.extend(await self._embed_batch(client, texts[i : i + BATCH_SIZE]))
        return results

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            return await self._embed_all(texts)
        except (httpx.HTTPError, EmbeddingsError, ValueError, KeyError, TypeError) as e:
            logger.error("Embedding request to %s failed: %s", self.endpoint, e)
            return [zero_vector(self.dimensions) for _ in texts]

    async def test(self) -> bool:
        try:
            result = await self._embed_all(["test"])
        except Exception as e:
            logger.warning("Embedding provider self-test failed: %s", e)
            return False
        return len(result) == 1 and len(result[0]) == self.dimensions

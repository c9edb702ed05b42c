from __future__ import annotations

import asyncio
import json

import httpx

from fakes import FakeProvider
from memory_engine.cache import MemoryCache
from memory_engine.config import EmbeddingConfig
from memory_engine.embedding import (
    ApiEmbeddingProvider,
    EmbeddingService,
    SharedEmbeddingClient,
    create_embedding_provider,
    local_model_dimensions,
)
from memory_engine.embedding.api import normalize_base_url
from memory_engine.embedding.local import resolve_local_model
from memory_engine.embedding.service import embedding_cache_key


def _run(coro):
    return asyncio.run(coro)


class TestEmbeddingService:
    def test_cache_hit_skips_provider(self):
        async def main():
            provider = FakeProvider()
            service = EmbeddingService(provider, MemoryCache())
            first = await service.embed_text("hello world")
            second = await service.embed_text("hello world")
            service.cache.destroy()
            return provider, first, second

        provider, first, second = _run(main())
        assert first == second
        assert len(provider.calls) == 1

    def test_misses_go_to_provider_in_one_call(self):
        async def main():
            provider = FakeProvider()
            service = EmbeddingService(provider, MemoryCache())
            await service.embed_text("b")
            out = await service.embed_texts(["a", "b", "c"])
            service.cache.destroy()
            return provider, out

        provider, out = _run(main())
        assert len(out) == 3
        assert provider.calls == [["b"], ["a", "c"]]

    def test_repeated_texts_are_embedded_once(self):
        async def main():
            provider = FakeProvider()
            service = EmbeddingService(provider, MemoryCache())
            out = await service.embed_texts(["same", "other", "same"])
            service.cache.destroy()
            return provider, out

        provider, out = _run(main())
        assert provider.calls == [["same", "other"]]
        assert len(out) == 3
        assert out[0] == out[2]
        assert out[0] != out[1]

    def test_zero_vectors_are_not_cached(self):
        async def main():
            provider = FakeProvider(fail=True)
            cache = MemoryCache()
            service = EmbeddingService(provider, cache)
            vec = await service.embed_text("flaky")
            cached = await cache.get(embedding_cache_key("flaky"))
            provider.fail = False
            retry = await service.embed_text("flaky")
            cache.destroy()
            return provider, vec, cached, retry

        provider, vec, cached, retry = _run(main())
        assert vec == [0.0] * provider.dimensions
        assert cached is None
        assert any(retry)
        assert len(provider.calls) == 2

    def test_cache_key_is_content_hash(self):
        assert embedding_cache_key("x") == embedding_cache_key("x")
        assert embedding_cache_key("x") != embedding_cache_key("y")
        assert embedding_cache_key("x").startswith("emb:")


def _api_transport(dimensions: int, seen: list, key: str = "data", status: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append((str(request.url), request.headers.get("authorization"), body))
        if status != 200:
            return httpx.Response(status, text="boom")
        items = [{"embedding": [0.5] * dimensions} for _ in body["input"]]
        return httpx.Response(200, json={key: items})

    return httpx.MockTransport(handler)


class TestApiEmbeddingProvider:
    def test_defaults_per_provider(self):
        openai = ApiEmbeddingProvider("openai")
        voyage = ApiEmbeddingProvider("voyage")
        assert (openai.model, openai.dimensions) == ("text-embedding-3-small", 1536)
        assert (voyage.model, voyage.dimensions) == ("voyage-code-3", 1024)
        assert voyage.endpoint == "https://api.voyageai.com/v1/embeddings"
        assert openai.name == "api:text-embedding-3-small"

    def test_base_url_normalisation(self):
        assert normalize_base_url("http://localhost:8080") == "http://localhost:8080/v1/embeddings"
        assert normalize_base_url("http://localhost:8080/v1/") == "http://localhost:8080/v1/embeddings"
        assert normalize_base_url("http://h/v1/embeddings") == "http://h/v1/embeddings"

    def test_batches_requests_of_100(self):
        seen: list = []
        provider = ApiEmbeddingProvider(
            "openai", api_key="sk-test", dimensions=4, transport=_api_transport(4, seen)
        )
        out = _run(provider.embed([f"t{i}" for i in range(250)]))
        assert len(out) == 250
        assert [len(body["input"]) for _, _, body in seen] == [100, 100, 50]
        url, auth, body = seen[0]
        assert url == "https://api.openai.com/v1/embeddings"
        assert auth == "Bearer sk-test"
        assert body["model"] == "text-embedding-3-small"

    def test_accepts_embeddings_key(self):
        seen: list = []
        provider = ApiEmbeddingProvider(
            "voyage", model="voyage-2", transport=_api_transport(1536, seen, key="embeddings")
        )
        out = _run(provider.embed(["a"]))
        assert len(out[0]) == 1536

    def test_http_error_yields_zero_vectors(self):
        seen: list = []
        provider = ApiEmbeddingProvider("openai", dimensions=3, transport=_api_transport(3, seen, status=500))
        out = _run(provider.embed(["a", "b"]))
        assert out == [[0.0, 0.0, 0.0], [0.0, 0.0, 0.0]]
        assert _run(provider.test()) is False

    def test_self_test_checks_dimensions(self):
        seen: list = []
        good = ApiEmbeddingProvider("openai", dimensions=8, transport=_api_transport(8, seen))
        bad = ApiEmbeddingProvider("openai", dimensions=16, transport=_api_transport(8, seen))
        assert _run(good.test()) is True
        assert _run(bad.test()) is False


class TestProviderFactory:
    def test_local_model_table(self):
        assert resolve_local_model("bge-small-en-v1.5")[1].name == "BAAI/bge-small-en-v1.5"
        assert resolve_local_model("no-such-model")[0] == "all-MiniLM-L6-v2"
        assert local_model_dimensions("all-MiniLM-L6-v2") == 384

    def test_api_config_builds_api_provider(self):
        provider = create_embedding_provider(
            EmbeddingConfig(provider="openai", model="text-embedding-3-large", api_key="k")
        )
        assert isinstance(provider, ApiEmbeddingProvider)
        assert provider.dimensions == 3072

    def test_local_config_builds_shared_client(self, tmp_path):
        provider = create_embedding_provider(EmbeddingConfig(provider="local"), str(tmp_path))
        assert isinstance(provider, SharedEmbeddingClient)
        assert provider.name == "shared:local:384d"
        assert provider.ready is False

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..config import DEFAULT_LOCAL_MODEL
from .base import EmbeddingProvider, EmbeddingsError, zero_vector

logger = logging.getLogger("memory_engine.embedding.local")


@dataclass(frozen=True)
class LocalModel:
    name: str
    dimensions: int


LOCAL_MODELS: Dict[str, LocalModel] = {
    "all-MiniLM-L6-v2": LocalModel("sentence-transformers/all-MiniLM-L6-v2", 384),
    "bge-small-en-v1.5": LocalModel("BAAI/bge-small-en-v1.5", 384),
}


def resolve_local_model(model: Optional[str]) -> tuple[str, LocalModel]:
    """Map a short model name to its FastEmbed id, defaulting unknown names."""
    if model and model in LOCAL_MODELS:
        return model, LOCAL_MODELS[model]
    # Also accept the full FastEmbed id.
    for short, spec in LOCAL_MODELS.items():
        if spec.name == model:
            return short, spec
    return DEFAULT_LOCAL_MODEL, LOCAL_MODELS[DEFAULT_LOCAL_MODEL]


class LocalEmbeddingProvider(EmbeddingProvider):
    """In-process FastEmbed model (ONNX on CPU), loaded lazily."""

    def __init__(self, model: str = DEFAULT_LOCAL_MODEL, cache_dir: Optional[str] = None):
        short, spec = resolve_local_model(model)
        if short != model:
            logger.info("Unknown local model %r, using %s", model, short)
        self.model = short
        self.model_name = spec.name
        self.dimensions = spec.dimensions
        self.cache_dir = cache_dir
        self._model: Any = None
        self._loading: Optional[asyncio.Future] = None

    @property
    def name(self) -> str:
        return f"local:{self.dimensions}d"

    @property
    def ready(self) -> bool:
        return self._model is not None

    def _load_sync(self) -> Any:
        try:
            from fastembed import TextEmbedding
        except ImportError as e:
            raise EmbeddingsError("FastEmbed not installed. Run: pip install fastembed") from e
        kwargs: Dict[str, Any] = {"model_name": self.model_name}
        if self.cache_dir:
            kwargs["cache_dir"] = self.cache_dir
        return TextEmbedding(**kwargs)

    async def ensure_loaded(self) -> None:
        if self._model is not None:
            return
        if self._loading is None:
            loop = asyncio.get_running_loop()
            self._loading = loop.run_in_executor(None, self._load_sync)
        try:
            self._model = await self._loading
            logger.info("Loaded local embedding model %s", self.model_name)
        except Exception:
            self._loading = None
            raise

    def warmup(self) -> None:
        if self._model is not None or self._loading is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.ensure_loaded())
        task.add_done_callback(_log_warmup_failure)

    def _encode_sync(self, texts: List[str]) -> List[List[float]]:
        try:
            return [[float(x) for x in vec] for vec in self._model.embed(texts)]
        except Exception as e:
            logger.warning("Batch embedding failed, retrying per text: %s", e)
        out: List[List[float]] = []
        for text in texts:
            try:
                vec = next(iter(self._model.embed([text])))
                out.append([float(x) for x in vec])
            except Exception as e:
                logger.error("Embedding failed for one text: %s", e)
                out.append(zero_vector(self.dimensions))
        return out

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            await self.ensure_loaded()
        except Exception as e:
            logger.error("Local model unavailable: %s", e)
            return [zero_vector(self.dimensions) for _ in texts]
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._encode_sync, list(texts))

    async def test(self) -> bool:
        try:
            await self.ensure_loaded()
            result = await self.embed(["test"])
        except Exception:
            return False
        return len(result) == 1 and len(result[0]) == self.dimensions and any(result[0])

    async def dispose(self) -> None:
        self._model = None
        self._loading = None


def _log_warmup_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("Local model warmup failed: %s", exc)

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List


class EmbeddingsError(Exception):
    pass


def zero_vector(dimensions: int) -> List[float]:
    return [0.0] * max(0, int(dimensions))


def is_zero_vector(vec: List[float]) -> bool:
    return not vec or all(x == 0.0 for x in vec)


class EmbeddingProvider(ABC):
    """Turns text into fixed-size vectors.

    ``embed`` is batched and order preserving and does not raise: a failed
    text comes back as a zero vector so callers can carry on degraded.
    """

    dimensions: int

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    def ready(self) -> bool:
        return True

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        ...

    @abstractmethod
    async def test(self) -> bool:
        ...

    def warmup(self) -> None:
        return None

    async def dispose(self) -> None:
        return None

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass
class VecSearchResult:
    memory_id: int
    distance: float

    def to_dict(self) -> Dict[str, Any]:
        return {"memoryId": self.memory_id, "distance": self.distance}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VecSearchResult":
        return cls(memory_id=int(data["memoryId"]), distance=float(data["distance"]))


class VecService(ABC):
    """Nearest-neighbour index over memory embeddings.

    Distances are cosine distances, smaller is more similar. When
    ``available`` is False every call is a silent no-op.
    """

    name = "vec"

    @property
    @abstractmethod
    def available(self) -> bool:
        ...

    @abstractmethod
    async def initialize(self, dimensions: int) -> None:
        ...

    @abstractmethod
    async def insert(self, embedding: List[float], memory_id: int, project_id: str) -> None:
        ...

    @abstractmethod
    async def delete(self, memory_id: int) -> None:
        ...

    @abstractmethod
    async def delete_by_project(self, project_id: str) -> None:
        ...

    @abstractmethod
    async def delete_by_memory_ids(self, memory_ids: List[int]) -> None:
        ...

    @abstractmethod
    async def search(
        self,
        embedding: List[float],
        project_id: Optional[str] = None,
        scope: Optional[str] = None,
        limit: int = 10,
    ) -> List[VecSearchResult]:
        ...

    @abstractmethod
    async def find_similar(
        self, embedding: List[float], project_id: str, threshold: float, limit: int
    ) -> List[VecSearchResult]:
        ...

    async def count(self) -> int:
        return 0

    async def dispose(self) -> None:
        return None


class NoopVecService(VecService):
    name = "noop"

    @property
    def available(self) -> bool:
        return False

    async def initialize(self, dimensions: int) -> None:
        return None

    async def insert(self, embedding: List[float], memory_id: int, project_id: str) -> None:
        return None

    async def delete(self, memory_id: int) -> None:
        return None

    async def delete_by_project(self, project_id: str) -> None:
        return None

    async def delete_by_memory_ids(self, memory_ids: List[int]) -> None:
        return None

    async def search(self, embedding, project_id=None, scope=None, limit=10) -> List[VecSearchResult]:
        return []

    async def find_similar(self, embedding, project_id, threshold, limit) -> List[VecSearchResult]:
        return []

"""Vector store interface shared by every backend."""

import math
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

from knowledge_retrieval.models.search import SearchResult
from knowledge_retrieval.models.vector import (
    UpsertResult,
    VectorDocument,
    VectorSearchOptions,
    VectorStoreStats,
)
from knowledge_retrieval.utils.errors import DimensionMismatchError


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity in [-1, 1].

    Raises:
        DimensionMismatchError: If the vectors differ in length
    """
    if len(a) != len(b):
        raise DimensionMismatchError(expected=len(a), actual=len(b))

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    denominator = math.sqrt(norm_a) * math.sqrt(norm_b)
    if denominator == 0:
        return 0.0
    return max(-1.0, min(1.0, dot / denominator))


def matches_filter(metadata: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    """Equality match on every filter key."""
    if not filter:
        return True
    return all(metadata.get(key) == value for key, value in filter.items())


class VectorStore(ABC):
    """
    Storage-agnostic vector store.

    Collections are keyed by knowledge base id. `upsert` never raises per item:
    failures are reported in the returned results.
    """

    backend: str = ""

    @abstractmethod
    async def upsert(
        self, collection_id: str, documents: Sequence[VectorDocument]
    ) -> List[UpsertResult]:
        ...

    @abstractmethod
    async def search(
        self,
        collection_id: str,
        query_vector: Sequence[float],
        options: Optional[VectorSearchOptions] = None,
    ) -> List[SearchResult]:
        """At most `top_k` results with score >= `threshold`, best first."""

    @abstractmethod
    async def delete(self, collection_id: str, ids: Sequence[str]) -> int:
        ...

    @abstractmethod
    async def delete_all(self, collection_id: str) -> int:
        ...

    @abstractmethod
    async def count(self, collection_id: str) -> int:
        ...

    @abstractmethod
    async def get(self, collection_id: str, ids: Sequence[str]) -> List[VectorDocument]:
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    async def get_stats(self) -> VectorStoreStats:
        return VectorStoreStats(backend=self.backend)

    async def optimize_index(self) -> None:
        """Refresh index statistics after bulk writes. Backends that need it override this."""
        return None

    async def close(self) -> None:
        return None

    @staticmethod
    def batches(documents: Sequence[VectorDocument], size: int) -> List[Sequence[VectorDocument]]:
        size = max(1, size)
        return [documents[i : i + size] for i in range(0, len(documents), size)]

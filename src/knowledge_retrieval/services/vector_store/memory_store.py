"""In-memory vector store using brute-force cosine similarity."""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from knowledge_retrieval.config import VectorStoreType, get_settings
from knowledge_retrieval.models.search import SearchResult
from knowledge_retrieval.models.vector import (
    StoredVector,
    UpsertResult,
    VectorDocument,
    VectorSearchOptions,
    VectorStoreStats,
)
from knowledge_retrieval.services.vector_store.base import (
    VectorStore,
    cosine_similarity,
    matches_filter,
)
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("vector_store.memory")


class MemoryVectorStore(VectorStore):
    """
    Vector store held in process memory.

    Used for development and as the search fallback when no external backend
    is available. Each collection is capped at `max_size` vectors.
    """

    backend = VectorStoreType.MEMORY.value

    def __init__(self, max_size: Optional[int] = None):
        self.max_size = max_size or get_settings().vector_store.memory_max_size
        self._collections: Dict[str, Dict[str, StoredVector]] = {}

    def _collection(self, collection_id: str) -> Dict[str, StoredVector]:
        return self._collections.setdefault(collection_id, {})

    async def upsert(
        self, collection_id: str, documents: Sequence[VectorDocument]
    ) -> List[UpsertResult]:
        collection = self._collection(collection_id)
        now = datetime.now(timezone.utc)
        results: List[UpsertResult] = []

        for doc in documents:
            existing = collection.get(doc.id)
            if existing is None and len(collection) >= self.max_size:
                logger.warning(
                    f"Memory vector store full: collection={collection_id}, "
                    f"max_size={self.max_size}, skipped={doc.id}"
                )
                results.append(UpsertResult(id=doc.id, success=False, error="capacity exceeded"))
                continue

            collection[doc.id] = StoredVector(
                id=doc.id,
                content=doc.content,
                embedding=list(doc.embedding),
                metadata=dict(doc.metadata),
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            results.append(UpsertResult(id=doc.id, success=True))

        return results

    async def search(
        self,
        collection_id: str,
        query_vector: Sequence[float],
        options: Optional[VectorSearchOptions] = None,
    ) -> List[SearchResult]:
        options = options or VectorSearchOptions()
        scored: List[SearchResult] = []

        for doc in self._collections.get(collection_id, {}).values():
            if not matches_filter(doc.metadata, options.filter):
                continue
            score = cosine_similarity(query_vector, doc.embedding)
            if score < options.threshold:
                continue
            scored.append(
                SearchResult.from_vector_record(doc.id, doc.content, score, dict(doc.metadata))
            )

        scored.sort(key=lambda r: r.score, reverse=True)
        return scored[: options.top_k]

    async def batch_search(
        self,
        collection_id: str,
        query_vectors: Sequence[Sequence[float]],
        options: Optional[VectorSearchOptions] = None,
    ) -> List[List[SearchResult]]:
        return list(
            await asyncio.gather(*(self.search(collection_id, v, options) for v in query_vectors))
        )

    async def delete(self, collection_id: str, ids: Sequence[str]) -> int:
        collection = self._collections.get(collection_id, {})
        deleted = 0
        for id in ids:
            if collection.pop(id, None) is not None:
                deleted += 1
        return deleted

    async def delete_all(self, collection_id: str) -> int:
        collection = self._collections.pop(collection_id, None)
        return len(collection) if collection else 0

    async def count(self, collection_id: str) -> int:
        return len(self._collections.get(collection_id, {}))

    async def get(self, collection_id: str, ids: Sequence[str]) -> List[VectorDocument]:
        collection = self._collections.get(collection_id, {})
        return [
            VectorDocument(
                id=doc.id,
                content=doc.content,
                embedding=list(doc.embedding),
                metadata=dict(doc.metadata),
            )
            for doc in (collection.get(id) for id in ids)
            if doc is not None
        ]

    async def health_check(self) -> bool:
        return True

    async def get_stats(self) -> VectorStoreStats:
        total = 0
        estimated_bytes = 0
        for collection in self._collections.values():
            total += len(collection)
            for doc in collection.values():
                estimated_bytes += len(doc.content) * 2 + len(doc.embedding) * 8 + 100
        return VectorStoreStats(
            backend=self.backend,
            collections=len(self._collections),
            total_vectors=total,
            details={"estimated_bytes": estimated_bytes, "max_size": self.max_size},
        )

    def export_collection(self, collection_id: str) -> List[VectorDocument]:
        """Snapshot a collection for persistence."""
        return [
            VectorDocument(
                id=doc.id,
                content=doc.content,
                embedding=list(doc.embedding),
                metadata=dict(doc.metadata),
            )
            for doc in self._collections.get(collection_id, {}).values()
        ]

    async def import_collection(
        self, collection_id: str, documents: Sequence[VectorDocument]
    ) -> int:
        """Load documents into a collection and return how many were stored."""
        results = await self.upsert(collection_id, documents)
        return sum(1 for r in results if r.success)

    async def close(self) -> None:
        self._collections.clear()
        logger.info("Memory vector store cleared")

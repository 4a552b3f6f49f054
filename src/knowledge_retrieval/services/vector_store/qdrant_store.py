"""Qdrant backend: one Qdrant collection per knowledge base."""

import asyncio
import uuid
from typing import Any, Dict, List, Optional, Sequence

from qdrant_client import QdrantClient
from qdrant_client.http.exceptions import UnexpectedResponse
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from knowledge_retrieval.config import VectorStoreType, get_settings
from knowledge_retrieval.models.search import SearchResult
from knowledge_retrieval.models.vector import (
    UpsertResult,
    VectorDocument,
    VectorSearchOptions,
    VectorStoreStats,
)
from knowledge_retrieval.services.vector_store.base import VectorStore
from knowledge_retrieval.utils.errors import VectorStoreError
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("vector_store.qdrant")

# Deterministic namespace for stable point ids derived from chunk ids
_POINT_ID_NAMESPACE = uuid.UUID("6b9c7d68-4b93-4c9c-9d83-0b6c68dbb4d9")


def make_point_id(document_id: str) -> str:
    return str(uuid.uuid5(_POINT_ID_NAMESPACE, document_id))


def _is_not_found(error: Exception) -> bool:
    if isinstance(error, UnexpectedResponse) and getattr(error, "status_code", None) == 404:
        return True
    message = str(error).lower()
    return "not found" in message or "404" in message


class QdrantVectorStore(VectorStore):
    """
    Vectors in Qdrant, collection `{prefix}{collection_id}`.

    Point ids are uuid5 of the chunk id; the chunk id, content and metadata
    live in the payload. The synchronous client runs in worker threads.
    """

    backend = VectorStoreType.QDRANT.value

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        collection_prefix: Optional[str] = None,
        dimension: int = 1536,
        client: Optional[QdrantClient] = None,
    ):
        config = get_settings().vector_store
        self._url = url or config.qdrant_url
        self._api_key = api_key or config.qdrant_api_key
        self._timeout = config.qdrant_timeout
        self.collection_prefix = collection_prefix if collection_prefix is not None else config.qdrant_collection_prefix
        self.dimension = dimension
        self._batch_size = config.upsert_batch_size
        self._client = client
        self._ensured: set = set()

    def _get_client(self) -> QdrantClient:
        if self._client is None:
            self._client = QdrantClient(url=self._url, api_key=self._api_key, timeout=self._timeout)
        return self._client

    def collection_name(self, collection_id: str) -> str:
        return f"{self.collection_prefix}{collection_id}"

    async def _run(self, operation: str, fn, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except VectorStoreError:
            raise
        except Exception as e:
            logger.error(f"Qdrant {operation} failed: {e}")
            raise VectorStoreError(
                f"Qdrant {operation} failed", backend=self.backend, details={"error": str(e)}
            ) from e

    async def ensure_collection(self, collection_id: str) -> None:
        name = self.collection_name(collection_id)
        if name in self._ensured:
            return

        def _ensure() -> None:
            client = self._get_client()
            try:
                info = client.get_collection(name)
            except Exception as e:
                if not _is_not_found(e):
                    raise
                client.create_collection(
                    collection_name=name,
                    vectors_config=VectorParams(size=self.dimension, distance=Distance.COSINE),
                )
                return
            size = getattr(getattr(info.config.params, "vectors", None), "size", None)
            if size is not None and int(size) != int(self.dimension):
                raise VectorStoreError(
                    "Qdrant collection vector size mismatch",
                    backend=self.backend,
                    details={"collection": name, "expected": self.dimension, "actual": int(size)},
                )

        await self._run("ensure_collection", _ensure)
        self._ensured.add(name)
        logger.info(f"Qdrant collection ensured: {name} (vector_size={self.dimension})")

    async def upsert(
        self, collection_id: str, documents: Sequence[VectorDocument]
    ) -> List[UpsertResult]:
        if not documents:
            return []
        await self.ensure_collection(collection_id)
        name = self.collection_name(collection_id)
        results: List[UpsertResult] = []

        for batch in self.batches(documents, self._batch_size):
            points = [
                PointStruct(
                    id=make_point_id(doc.id),
                    vector=list(doc.embedding),
                    payload={"id": doc.id, "content": doc.content, "metadata": doc.metadata},
                )
                for doc in batch
            ]
            try:
                await self._run(
                    "upsert",
                    self._get_client().upsert,
                    collection_name=name,
                    points=points,
                    wait=True,
                )
            except VectorStoreError as e:
                results.extend(UpsertResult(id=doc.id, success=False, error=e.message) for doc in batch)
                continue
            results.extend(UpsertResult(id=doc.id, success=True) for doc in batch)
        return results

    async def search(
        self,
        collection_id: str,
        query_vector: Sequence[float],
        options: Optional[VectorSearchOptions] = None,
    ) -> List[SearchResult]:
        options = options or VectorSearchOptions()
        query_filter = None
        if options.filter:
            query_filter = Filter(
                must=[
                    FieldCondition(key=f"metadata.{key}", match=MatchValue(value=value))
                    for key, value in options.filter.items()
                ]
            )

        def _search():
            try:
                return self._get_client().query_points(
                    collection_name=self.collection_name(collection_id),
                    query=list(query_vector),
                    limit=options.top_k,
                    score_threshold=options.threshold if options.threshold > 0 else None,
                    query_filter=query_filter,
                    with_payload=True,
                ).points
            except Exception as e:
                if _is_not_found(e):
                    return []
                raise

        points = await self._run("search", _search)
        return [
            SearchResult.from_vector_record(
                str((p.payload or {}).get("id", p.id)),
                (p.payload or {}).get("content", ""),
                float(p.score),
                dict((p.payload or {}).get("metadata") or {}),
            )
            for p in points
        ]

    async def delete(self, collection_id: str, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        existing = await self.get(collection_id, ids)
        if not existing:
            return 0
        await self._run(
            "delete",
            self._get_client().delete,
            collection_name=self.collection_name(collection_id),
            points_selector=PointIdsList(points=[make_point_id(doc.id) for doc in existing]),
            wait=True,
        )
        return len(existing)

    async def delete_all(self, collection_id: str) -> int:
        count = await self.count(collection_id)
        if count == 0:
            return 0
        await self._run(
            "delete_collection",
            self._get_client().delete_collection,
            collection_name=self.collection_name(collection_id),
        )
        self._ensured.discard(self.collection_name(collection_id))
        return count

    async def count(self, collection_id: str) -> int:
        def _count() -> int:
            try:
                return self._get_client().count(
                    collection_name=self.collection_name(collection_id), exact=True
                ).count
            except Exception as e:
                if _is_not_found(e):
                    return 0
                raise

        return await self._run("count", _count)

    async def get(self, collection_id: str, ids: Sequence[str]) -> List[VectorDocument]:
        if not ids:
            return []

        def _retrieve():
            try:
                return self._get_client().retrieve(
                    collection_name=self.collection_name(collection_id),
                    ids=[make_point_id(id) for id in ids],
                    with_payload=True,
                    with_vectors=True,
                )
            except Exception as e:
                if _is_not_found(e):
                    return []
                raise

        records = await self._run("retrieve", _retrieve)
        documents: List[VectorDocument] = []
        for record in records:
            payload: Dict[str, Any] = record.payload or {}
            vector = record.vector if isinstance(record.vector, list) else []
            documents.append(
                VectorDocument(
                    id=str(payload.get("id", record.id)),
                    content=payload.get("content", ""),
                    embedding=[float(v) for v in vector],
                    metadata=dict(payload.get("metadata") or {}),
                )
            )
        return documents

    async def health_check(self) -> bool:
        try:
            await asyncio.to_thread(self._get_client().get_collections)
            return True
        except Exception as e:
            logger.error(f"Qdrant health check failed: {e}")
            return False

    async def get_stats(self) -> VectorStoreStats:
        collections = await self._run("get_collections", self._get_client().get_collections)
        names = [c.name for c in collections.collections if c.name.startswith(self.collection_prefix)]
        return VectorStoreStats(
            backend=self.backend,
            collections=len(names),
            details={"url": self._url, "prefix": self.collection_prefix},
        )

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None

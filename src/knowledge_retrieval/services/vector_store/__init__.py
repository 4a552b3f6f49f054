"""Vector store interface and backends."""

from knowledge_retrieval.services.vector_store.base import VectorStore, cosine_similarity
from knowledge_retrieval.services.vector_store.memory_store import MemoryVectorStore
from knowledge_retrieval.services.vector_store.registry import (
    VectorStoreRegistry,
    get_vector_store_registry,
)

__all__ = [
    "VectorStore",
    "cosine_similarity",
    "MemoryVectorStore",
    "VectorStoreRegistry",
    "get_vector_store_registry",
]

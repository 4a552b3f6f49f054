"""Storage-agnostic vector store models."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from knowledge_retrieval.config import VectorStoreType


class VectorDocument(BaseModel):
    """Record passed to any vector store backend."""

    id: str
    content: str
    embedding: List[float]
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StoredVector(VectorDocument):
    """A vector document as held by a backend."""

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UpsertResult(BaseModel):
    """Per-item upsert outcome."""

    id: str
    success: bool
    error: Optional[str] = None


class VectorSearchOptions(BaseModel):
    """Search parameters shared by all backends."""

    top_k: int = Field(default=5, ge=1)
    threshold: float = Field(default=0.0)
    filter: Optional[Dict[str, Any]] = None


class VectorStoreConfig(BaseModel):
    """Per-knowledge-base backend selection. Unset fields fall back to settings."""

    type: VectorStoreType = VectorStoreType.MEMORY
    dimension: int = Field(default=1536, ge=1)
    connection_url: Optional[str] = None
    api_key: Optional[str] = None
    table_name: Optional[str] = None
    function_name: Optional[str] = None
    index_type: Optional[str] = None
    collection_prefix: Optional[str] = None

    def cache_key(self) -> str:
        """Identity used to share backend instances between knowledge bases."""
        return "|".join(
            str(v)
            for v in (
                self.type.value,
                self.dimension,
                self.connection_url,
                self.table_name,
                self.function_name,
                self.index_type,
                self.collection_prefix,
            )
        )


class VectorStoreStats(BaseModel):
    """Backend statistics."""

    backend: str
    collections: int = 0
    total_vectors: int = 0
    details: Dict[str, Any] = Field(default_factory=dict)

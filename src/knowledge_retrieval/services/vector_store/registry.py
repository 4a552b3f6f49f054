"""Per-knowledge-base vector store resolution."""

from typing import Callable, Dict, Optional

from knowledge_retrieval.config import VectorStoreType, get_settings
from knowledge_retrieval.models.vector import VectorStoreConfig
from knowledge_retrieval.services.vector_store.base import VectorStore
from knowledge_retrieval.services.vector_store.memory_store import MemoryVectorStore
from knowledge_retrieval.services.vector_store.pgvector_store import PgVectorStore
from knowledge_retrieval.services.vector_store.qdrant_store import QdrantVectorStore
from knowledge_retrieval.services.vector_store.supabase_store import SupabaseVectorStore
from knowledge_retrieval.utils.errors import ConfigurationError
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("vector_store.registry")


def _build_memory(config: VectorStoreConfig) -> VectorStore:
    return MemoryVectorStore()


def _build_pgvector(config: VectorStoreConfig) -> VectorStore:
    return PgVectorStore(
        connection_url=config.connection_url,
        table_name=config.table_name,
        dimension=config.dimension,
        index_type=config.index_type,
    )


def _build_supabase(config: VectorStoreConfig) -> VectorStore:
    return SupabaseVectorStore(
        url=config.connection_url,
        key=config.api_key,
        table_name=config.table_name,
        function_name=config.function_name,
        dimension=config.dimension,
    )


def _build_qdrant(config: VectorStoreConfig) -> VectorStore:
    return QdrantVectorStore(
        url=config.connection_url,
        api_key=config.api_key,
        collection_prefix=config.collection_prefix,
        dimension=config.dimension,
    )


BACKEND_BUILDERS: Dict[VectorStoreType, Callable[[VectorStoreConfig], VectorStore]] = {
    VectorStoreType.MEMORY: _build_memory,
    VectorStoreType.PGVECTOR: _build_pgvector,
    VectorStoreType.SUPABASE: _build_supabase,
    VectorStoreType.QDRANT: _build_qdrant,
}


class VectorStoreRegistry:
    """
    Resolves the vector store for each knowledge base once and caches it.

    Knowledge bases whose configuration is identical share one backend
    instance. Knowledge bases without their own configuration use the
    backend named in settings.
    """

    def __init__(self, builders: Optional[Dict[VectorStoreType, Callable]] = None):
        self._builders = dict(BACKEND_BUILDERS) if builders is None else builders
        self._by_knowledge_base: Dict[str, VectorStore] = {}
        self._by_config: Dict[str, VectorStore] = {}

    def default_config(self, dimension: int = 1536) -> VectorStoreConfig:
        return VectorStoreConfig(type=get_settings().vector_store.type, dimension=dimension)

    def resolve(
        self,
        knowledge_base_id: str,
        config: Optional[VectorStoreConfig] = None,
        dimension: int = 1536,
    ) -> VectorStore:
        """Return the cached store for a knowledge base, building it on first use."""
        store = self._by_knowledge_base.get(knowledge_base_id)
        if store is not None:
            return store

        config = config or self.default_config(dimension)
        key = config.cache_key()
        store = self._by_config.get(key)
        if store is None:
            builder = self._builders.get(config.type)
            if builder is None:
                raise ConfigurationError(f"Unsupported vector store type: {config.type}")
            store = builder(config)
            self._by_config[key] = store
            logger.info(f"Vector store created: backend={config.type.value}, dimension={config.dimension}")

        self._by_knowledge_base[knowledge_base_id] = store
        return store

    def register(self, knowledge_base_id: str, store: VectorStore) -> None:
        """Pin a store instance to a knowledge base."""
        self._by_knowledge_base[knowledge_base_id] = store

    def invalidate(self, knowledge_base_id: str) -> None:
        """Forget the resolution for a knowledge base (its configuration changed)."""
        self._by_knowledge_base.pop(knowledge_base_id, None)

    async def close_all(self) -> None:
        stores = {id(s): s for s in [*self._by_config.values(), *self._by_knowledge_base.values()]}
        for store in stores.values():
            try:
                await store.close()
            except Exception as e:
                logger.warning(f"Error closing vector store backend={store.backend}: {e}")
        self._by_config.clear()
        self._by_knowledge_base.clear()


_registry: Optional[VectorStoreRegistry] = None


def get_vector_store_registry() -> VectorStoreRegistry:
    """Get the process-wide registry."""
    global _registry
    if _registry is None:
        _registry = VectorStoreRegistry()
    return _registry

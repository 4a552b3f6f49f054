"""Knowledge base search: vector search with in-memory fallback, keyword search, RAG context."""

import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_retrieval.config import get_settings
from knowledge_retrieval.database.models import KnowledgeBase
from knowledge_retrieval.database.session import session_scope
from knowledge_retrieval.models.search import SearchResult
from knowledge_retrieval.models.vector import VectorSearchOptions
from knowledge_retrieval.repositories.chunk_repository import (
    ChunkRepository,
    parse_embedding,
    parse_metadata,
)
from knowledge_retrieval.repositories.knowledge_base_repository import KnowledgeBaseRepository
from knowledge_retrieval.services.bm25.cache import BM25IndexCache, get_bm25_cache
from knowledge_retrieval.services.bm25.index import highlight_matches
from knowledge_retrieval.services.chunking_service import get_chunking_service
from knowledge_retrieval.services.diagnostics import SearchDataCollector
from knowledge_retrieval.services.embedding_providers import get_embedding_dimension
from knowledge_retrieval.services.embedding_service import EmbeddingService, get_embedding_service
from knowledge_retrieval.services.vector_store.base import VectorStore, cosine_similarity, matches_filter
from knowledge_retrieval.services.vector_store.registry import (
    VectorStoreRegistry,
    get_vector_store_registry,
)
from knowledge_retrieval.utils.errors import (
    DimensionMismatchError,
    EmptyKnowledgeBaseError,
    NotFoundError,
)
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("search_service")

_KEYWORD_SPLIT = re.compile(r"[\s,，。.!！?？]+")

DEFAULT_RAG_SYSTEM_PROMPT = (
    "You are a knowledge base assistant. Answer the user's question using the reference "
    "material below.\n"
    'If the material does not contain the answer, say "The available material does not '
    'answer this question."\n'
    "Cite the sources you rely on."
)


def build_rag_prompt(context: str, query: str, system_prompt: Optional[str] = None) -> str:
    return (
        f"{system_prompt or DEFAULT_RAG_SYSTEM_PROMPT}\n\n"
        f"## Reference material\n{context}\n\n"
        f"## Question\n{query}\n\n"
        f"## Answer"
    )


def split_keywords(query: str) -> List[str]:
    """Lowercased query words longer than one character."""
    return [k for k in _KEYWORD_SPLIT.split(query.lower()) if len(k) > 1]


class SearchService:
    """
    Single-source searches over one knowledge base.

    Vector search asks the knowledge base's configured store first. When
    that store raises or returns nothing, the query is answered by
    brute-force cosine similarity over the embeddings persisted with the
    chunks. Keyword search uses the cached BM25 index and falls back to
    substring matching when the index cannot be loaded or queried.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        embedding_service: Optional[EmbeddingService] = None,
        registry: Optional[VectorStoreRegistry] = None,
        bm25_cache: Optional[BM25IndexCache] = None,
    ):
        self._session_factory = session_factory
        self._embedding_service = embedding_service
        self._registry = registry or get_vector_store_registry()
        self._bm25_cache = bm25_cache or get_bm25_cache()

    @property
    def session_factory(self) -> Optional[async_sessionmaker[AsyncSession]]:
        return self._session_factory

    async def get_knowledge_base(self, knowledge_base_id: str, require_content: bool = True) -> KnowledgeBase:
        """
        Load a knowledge base.

        Raises:
            NotFoundError: No such knowledge base
            EmptyKnowledgeBaseError: `require_content` and no COMPLETED chunks exist
        """
        async with session_scope(self._session_factory) as session:
            knowledge_base = await KnowledgeBaseRepository(session).get_by_id(knowledge_base_id)
            if knowledge_base is None:
                raise NotFoundError("Knowledge base", knowledge_base_id)
            if require_content:
                count = await ChunkRepository(session).count_for_knowledge_base(knowledge_base_id)
                if count == 0:
                    raise EmptyKnowledgeBaseError(knowledge_base_id)
        return knowledge_base

    def embedding_service_for(self, knowledge_base: KnowledgeBase) -> EmbeddingService:
        if self._embedding_service is not None:
            return self._embedding_service
        return get_embedding_service(knowledge_base.embedding_provider, knowledge_base.embedding_model)

    def vector_store_for(self, knowledge_base: KnowledgeBase) -> VectorStore:
        dimension = get_embedding_dimension(knowledge_base.embedding_model)
        config = KnowledgeBaseRepository.vector_store_config(knowledge_base, dimension)
        return self._registry.resolve(knowledge_base.id, config, dimension)

    async def embed_query(
        self,
        knowledge_base: KnowledgeBase,
        query: str,
        collector: Optional[SearchDataCollector] = None,
    ) -> List[float]:
        embedder = self.embedding_service_for(knowledge_base)
        if collector is None:
            return (await embedder.embed(query)).embedding
        with collector.measure("embedding"):
            result = await embedder.embed(query)
        collector.record_token_usage(result.tokens)
        return result.embedding

    async def vector_search(
        self,
        knowledge_base_id: str,
        query: str,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
        filter: Optional[Dict[str, Any]] = None,
        query_vector: Optional[Sequence[float]] = None,
        collector: Optional[SearchDataCollector] = None,
        knowledge_base: Optional[KnowledgeBase] = None,
    ) -> Tuple[List[SearchResult], bool]:
        """
        Semantic search.

        Returns:
            (results, fallback_used)

        Raises:
            NotFoundError / EmptyKnowledgeBaseError: See `get_knowledge_base`
            DimensionMismatchError: Query and stored vectors differ in size
        """
        config = get_settings().search
        options = VectorSearchOptions(
            top_k=top_k or config.top_k,
            threshold=config.vector_threshold if threshold is None else threshold,
            filter=filter,
        )
        if knowledge_base is None:
            knowledge_base = await self.get_knowledge_base(knowledge_base_id)
        if query_vector is None:
            query_vector = await self.embed_query(knowledge_base, query, collector)

        results: List[SearchResult] = []
        store = self.vector_store_for(knowledge_base)
        try:
            if collector is not None:
                with collector.measure("vector_search"):
                    results = await store.search(knowledge_base_id, query_vector, options)
            else:
                results = await store.search(knowledge_base_id, query_vector, options)
        except DimensionMismatchError:
            raise
        except Exception as e:
            logger.warning(
                f"Vector store search failed, using in-memory fallback: "
                f"knowledge_base_id={knowledge_base_id}, backend={store.backend}, error={e}"
            )
            results = []

        if results:
            if collector is not None:
                collector.record_search_mode("vector", False)
            return results, False

        logger.warning(
            f"Vector store returned no results, using in-memory fallback: "
            f"knowledge_base_id={knowledge_base_id}, backend={store.backend}"
        )
        if collector is not None:
            with collector.measure("database"):
                results = await self.memory_search(knowledge_base_id, query_vector, options)
            collector.record_search_mode("memory", True)
        else:
            results = await self.memory_search(knowledge_base_id, query_vector, options)
        return results, True

    async def memory_search(
        self,
        knowledge_base_id: str,
        query_vector: Sequence[float],
        options: VectorSearchOptions,
    ) -> List[SearchResult]:
        """Brute-force cosine similarity over persisted chunk embeddings."""
        async with session_scope(self._session_factory) as session:
            rows = await ChunkRepository(session).get_completed_for_knowledge_base(knowledge_base_id)

        scored: List[SearchResult] = []
        for chunk, file_name in rows:
            embedding = parse_embedding(chunk.embedding)
            if embedding is None:
                continue
            metadata = parse_metadata(chunk.metadata_json)
            if not matches_filter(metadata, options.filter):
                continue
            score = cosine_similarity(query_vector, embedding)
            if score < options.threshold:
                continue
            scored.append(
                SearchResult(
                    chunk_id=chunk.id,
                    document_id=chunk.document_id,
                    document_name=file_name,
                    content=chunk.content,
                    score=score,
                    metadata=metadata,
                )
            )
        scored.sort(key=lambda r: r.score, reverse=True)
        return scored[: options.top_k]

    async def keyword_search(
        self,
        knowledge_base_id: str,
        query: str,
        top_k: Optional[int] = None,
        filter: Optional[Dict[str, Any]] = None,
        collector: Optional[SearchDataCollector] = None,
    ) -> Tuple[List[SearchResult], bool]:
        """
        BM25 search with raw (unnormalized) scores.

        Returns:
            (results, fallback_used) where fallback_used means substring matching
            answered because the BM25 index failed.
        """
        top_k = top_k or get_settings().search.top_k
        if collector is not None:
            with collector.measure("keyword_search"):
                return await self._keyword_search(knowledge_base_id, query, top_k, filter)
        return await self._keyword_search(knowledge_base_id, query, top_k, filter)

    async def _keyword_search(
        self,
        knowledge_base_id: str,
        query: str,
        top_k: int,
        filter: Optional[Dict[str, Any]],
    ) -> Tuple[List[SearchResult], bool]:
        try:
            index = await self._bm25_cache.get_or_create(knowledge_base_id)
            hits = index.search(query, top_k)
        except Exception as e:
            logger.warning(
                f"BM25 search failed, using substring matching: "
                f"knowledge_base_id={knowledge_base_id}, error={e}"
            )
            return await self.substring_search(knowledge_base_id, query, top_k, filter), True

        results: List[SearchResult] = []
        for hit in hits:
            document = index.get_document(hit.id)
            if document is None:
                continue
            metadata = dict(document.metadata)
            if not matches_filter(metadata, filter):
                continue
            results.append(
                SearchResult(
                    chunk_id=hit.id,
                    document_id=str(metadata.get("document_id", "")),
                    document_name=str(metadata.get("document_name", "")),
                    content=document.content,
                    score=hit.score,
                    metadata=metadata,
                    matched_keywords=hit.matched_terms,
                    highlighted_content=highlight_matches(document.content, hit.matched_terms),
                )
            )
        return results, False

    async def substring_search(
        self,
        knowledge_base_id: str,
        query: str,
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[SearchResult]:
        """Score = fraction of query keywords contained in the chunk."""
        keywords = split_keywords(query)
        if not keywords:
            return []
        async with session_scope(self._session_factory) as session:
            rows = await ChunkRepository(session).search_substring(
                knowledge_base_id, keywords, limit=top_k * 2
            )

        results: List[SearchResult] = []
        for chunk, file_name in rows:
            metadata = parse_metadata(chunk.metadata_json)
            if not matches_filter(metadata, filter):
                continue
            content = chunk.content.lower()
            matched = [k for k in keywords if k in content]
            results.append(
                SearchResult(
                    chunk_id=chunk.id,
                    document_id=chunk.document_id,
                    document_name=file_name,
                    content=chunk.content,
                    score=len(matched) / len(keywords),
                    metadata=metadata,
                    matched_keywords=matched,
                    highlighted_content=highlight_matches(chunk.content, matched),
                )
            )
        results.sort(key=lambda r: r.score, reverse=True)
        return results

    async def get_relevant_context(
        self,
        knowledge_base_id: str,
        query: str,
        max_tokens: Optional[int] = None,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> str:
        """Concatenate `[Source: name]` blocks of the top results within a token budget."""
        max_tokens = max_tokens or get_settings().search.context_max_tokens
        results, _ = await self.vector_search(knowledge_base_id, query, top_k=top_k, threshold=threshold)
        return assemble_context(results, max_tokens)


def assemble_context(results: Sequence[SearchResult], max_tokens: int) -> str:
    chunker = get_chunking_service()
    blocks: List[str] = []
    used = 0
    for result in results:
        block = f"[Source: {result.document_name}]\n{result.content}\n\n"
        tokens = chunker.count_tokens(block)
        if used + tokens > max_tokens:
            break
        blocks.append(block)
        used += tokens
    return "".join(blocks).strip()

"""FastAPI dependency providers.

Each provider returns a process-wide service instance; tests replace them
through `app.dependency_overrides`.
"""

from typing import Optional

from knowledge_retrieval.services.bm25.cache import BM25IndexCache, get_bm25_cache
from knowledge_retrieval.services.document_processor import (
    DocumentProcessor,
    get_document_processor,
)
from knowledge_retrieval.services.hybrid_search import HybridSearchService
from knowledge_retrieval.services.search_service import SearchService

_search_service: Optional[SearchService] = None
_hybrid_search_service: Optional[HybridSearchService] = None


def get_search_service() -> SearchService:
    global _search_service
    if _search_service is None:
        _search_service = SearchService()
    return _search_service


def get_hybrid_search_service() -> HybridSearchService:
    global _hybrid_search_service
    if _hybrid_search_service is None:
        _hybrid_search_service = HybridSearchService(search_service=get_search_service())
    return _hybrid_search_service


def get_processor() -> DocumentProcessor:
    return get_document_processor()


def get_keyword_index_cache() -> BM25IndexCache:
    return get_bm25_cache()

"""Repositories package."""

from knowledge_retrieval.repositories.base import BaseRepository
from knowledge_retrieval.repositories.bm25_repository import BM25IndexRepository
from knowledge_retrieval.repositories.chunk_repository import ChunkRepository
from knowledge_retrieval.repositories.document_repository import DocumentRepository
from knowledge_retrieval.repositories.knowledge_base_repository import KnowledgeBaseRepository

__all__ = [
    "BaseRepository",
    "BM25IndexRepository",
    "ChunkRepository",
    "DocumentRepository",
    "KnowledgeBaseRepository",
]

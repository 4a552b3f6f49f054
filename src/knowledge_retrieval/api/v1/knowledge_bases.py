"""Knowledge base management endpoints."""

import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_retrieval.api.dependencies import get_keyword_index_cache, get_processor
from knowledge_retrieval.config import VectorStoreType
from knowledge_retrieval.database.session import get_session
from knowledge_retrieval.models.document import DocumentProgress, ResyncResult
from knowledge_retrieval.repositories.knowledge_base_repository import KnowledgeBaseRepository
from knowledge_retrieval.services.bm25.cache import BM25IndexCache
from knowledge_retrieval.services.bm25.index import BM25Stats
from knowledge_retrieval.services.document_processor import DocumentProcessor
from knowledge_retrieval.utils.errors import NotFoundError
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("api.knowledge_bases")

router = APIRouter(prefix="/knowledge-bases", tags=["knowledge-bases"])


class KnowledgeBaseCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    embedding_provider: str = Field(default="openai")
    embedding_model: str = Field(default="text-embedding-3-small")
    vector_store_type: Optional[VectorStoreType] = None
    vector_store_config: Optional[Dict[str, Any]] = None
    chunk_size: int = Field(default=500, gt=0)
    chunk_overlap: int = Field(default=50, ge=0)


class KnowledgeBaseResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    embedding_provider: str
    embedding_model: str
    vector_store_type: Optional[str] = None
    chunk_size: int
    chunk_overlap: int
    document_count: int
    chunk_count: int

    model_config = {"from_attributes": True}


@router.post(
    "",
    response_model=KnowledgeBaseResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Knowledge Base",
)
async def create_knowledge_base(
    request: KnowledgeBaseCreateRequest,
    session: AsyncSession = Depends(get_session),
):
    knowledge_base = await KnowledgeBaseRepository(session).create(
        name=request.name,
        description=request.description,
        embedding_provider=request.embedding_provider,
        embedding_model=request.embedding_model,
        vector_store_type=request.vector_store_type.value if request.vector_store_type else None,
        vector_store_config=json.dumps(request.vector_store_config) if request.vector_store_config else None,
        chunk_size=request.chunk_size,
        chunk_overlap=request.chunk_overlap,
    )
    logger.info(f"Knowledge base created: id={knowledge_base.id}, name={knowledge_base.name}")
    return knowledge_base


@router.get(
    "/{knowledge_base_id}",
    response_model=KnowledgeBaseResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Knowledge Base",
)
async def get_knowledge_base(
    knowledge_base_id: str,
    session: AsyncSession = Depends(get_session),
):
    knowledge_base = await KnowledgeBaseRepository(session).get_by_id(knowledge_base_id)
    if knowledge_base is None:
        raise NotFoundError("Knowledge base", knowledge_base_id)
    return knowledge_base


@router.get(
    "/{knowledge_base_id}/progress",
    response_model=DocumentProgress,
    status_code=status.HTTP_200_OK,
    summary="Document Processing Progress",
)
async def get_progress(
    knowledge_base_id: str,
    processor: DocumentProcessor = Depends(get_processor),
):
    return await processor.get_document_progress(knowledge_base_id)


@router.delete(
    "/{knowledge_base_id}/documents/failed",
    status_code=status.HTTP_200_OK,
    summary="Remove Failed Documents",
)
async def cleanup_failed(
    knowledge_base_id: str,
    processor: DocumentProcessor = Depends(get_processor),
):
    removed = await processor.cleanup_failed_documents(knowledge_base_id)
    return {"knowledge_base_id": knowledge_base_id, "removed": removed}


@router.post(
    "/{knowledge_base_id}/resync",
    response_model=ResyncResult,
    status_code=status.HTTP_200_OK,
    summary="Resync Vector Store",
)
async def resync(
    knowledge_base_id: str,
    processor: DocumentProcessor = Depends(get_processor),
):
    """Rebuild the knowledge base's vector collection from persisted chunks."""
    return await processor.resync_knowledge_base(knowledge_base_id)


@router.get(
    "/{knowledge_base_id}/bm25",
    response_model=BM25Stats,
    status_code=status.HTTP_200_OK,
    summary="Keyword Index Statistics",
)
async def bm25_stats(
    knowledge_base_id: str,
    cache: BM25IndexCache = Depends(get_keyword_index_cache),
):
    index = await cache.get_or_create(knowledge_base_id)
    return index.get_stats()


@router.delete(
    "/{knowledge_base_id}/bm25",
    status_code=status.HTTP_200_OK,
    summary="Drop Keyword Index",
)
async def bm25_invalidate(
    knowledge_base_id: str,
    cache: BM25IndexCache = Depends(get_keyword_index_cache),
):
    """Drop the cached and persisted index; the next keyword search rebuilds it."""
    await cache.delete(knowledge_base_id)
    return {"knowledge_base_id": knowledge_base_id, "invalidated": True}

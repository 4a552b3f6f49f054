"""Search endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from knowledge_retrieval.api.dependencies import get_hybrid_search_service, get_search_service
from knowledge_retrieval.models.search import HybridSearchOptions, HybridSearchResponse
from knowledge_retrieval.services.hybrid_search import HybridSearchService
from knowledge_retrieval.services.search_service import SearchService, build_rag_prompt
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("api.search")

router = APIRouter(prefix="/knowledge-bases", tags=["search"])


class SearchRequest(HybridSearchOptions):
    """Hybrid search request: the query plus any search option."""

    query: str = Field(..., min_length=1, description="Search query")


class ContextRequest(BaseModel):
    """Request for token-budgeted RAG context."""

    query: str = Field(..., min_length=1)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    top_k: Optional[int] = Field(default=None, ge=1, le=100)
    threshold: Optional[float] = None
    include_prompt: bool = Field(default=False, description="Also return a ready-to-send RAG prompt")
    system_prompt: Optional[str] = None


class ContextResponse(BaseModel):
    context: str
    prompt: Optional[str] = None


@router.post(
    "/{knowledge_base_id}/search",
    response_model=HybridSearchResponse,
    status_code=status.HTTP_200_OK,
    summary="Hybrid Search",
)
async def search(
    knowledge_base_id: str,
    request: SearchRequest,
    service: HybridSearchService = Depends(get_hybrid_search_service),
):
    """
    Search a knowledge base with combined vector and keyword ranking.

    Degraded backends do not fail the request: `fallback_used` reports that
    in-memory vector search or substring keyword matching answered instead.
    """
    options = HybridSearchOptions(**request.model_dump(exclude={"query"}))
    return await service.search(knowledge_base_id, request.query, options)


@router.post(
    "/{knowledge_base_id}/context",
    response_model=ContextResponse,
    status_code=status.HTTP_200_OK,
    summary="Retrieve RAG Context",
)
async def get_context(
    knowledge_base_id: str,
    request: ContextRequest,
    service: SearchService = Depends(get_search_service),
):
    context = await service.get_relevant_context(
        knowledge_base_id,
        request.query,
        max_tokens=request.max_tokens,
        top_k=request.top_k,
        threshold=request.threshold,
    )
    prompt = build_rag_prompt(context, request.query, request.system_prompt) if request.include_prompt else None
    return ContextResponse(context=context, prompt=prompt)

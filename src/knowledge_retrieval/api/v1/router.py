"""API v1 router aggregation."""

from fastapi import APIRouter

from knowledge_retrieval.api.v1 import documents, health, knowledge_bases, search

router = APIRouter(
    prefix="/api/v1",
    tags=["v1"],
    responses={
        404: {"description": "Not found"},
        422: {"description": "Validation error"},
        500: {"description": "Internal server error"},
    },
)

router.include_router(health.router)
router.include_router(knowledge_bases.router)
router.include_router(search.router)
router.include_router(documents.router)


@router.get(
    "/",
    summary="API Information",
    description="Get API version and status information",
    tags=["v1"],
)
async def api_info():
    return {
        "version": "v1",
        "status": "active",
        "service": "knowledge-retrieval",
        "endpoints": {
            "health": "/api/v1/health",
            "ready": "/api/v1/ready",
            "knowledge_bases": "/api/v1/knowledge-bases",
            "search": "/api/v1/knowledge-bases/{knowledge_base_id}/search",
            "context": "/api/v1/knowledge-bases/{knowledge_base_id}/context",
            "documents": "/api/v1/knowledge-bases/{knowledge_base_id}/documents",
        },
    }

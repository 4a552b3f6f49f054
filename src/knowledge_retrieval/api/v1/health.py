"""Health check endpoints."""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from knowledge_retrieval.config import get_settings
from knowledge_retrieval.database.connection import check_connection
from knowledge_retrieval.utils.background import get_background_runner
from knowledge_retrieval.utils.logging import get_logger

logger = get_logger("health")

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """
    Liveness check.

    Does not touch external dependencies; healthy whenever the process serves requests.
    """
    settings = get_settings()
    logger.debug("Health check requested")
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "environment": settings.environment.value,
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check():
    """
    Readiness check.

    The database is critical; missing embedding credentials are reported but
    only the database decides the status code. Recent background failures
    (vector sync, usage recording) are surfaced for operators.
    """
    settings = get_settings()
    logger.debug("Readiness check requested")

    checks = {
        "database": False,
        "embeddings": False,
    }

    try:
        checks["database"] = await check_connection()
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")

    checks["embeddings"] = settings.embedding.is_configured
    if not checks["embeddings"]:
        logger.warning(
            f"Embeddings configuration check failed: provider={settings.embedding.provider.value}"
        )

    body = {
        "status": "ready" if checks["database"] else "not_ready",
        "app_name": settings.app_name,
        "environment": settings.environment.value,
        "checks": checks,
        "background_failures": len(get_background_runner().failures),
    }
    if not checks["database"]:
        logger.warning(f"Readiness check failed (critical): {checks}")
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body

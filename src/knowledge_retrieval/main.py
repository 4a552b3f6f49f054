"""FastAPI application entry point.

Creates the application with:
- Middleware (CORS, request id, timing)
- Exception handlers rendering `KnowledgeException.to_dict()`
- API routers (v1) and root-level health checks
- Startup/shutdown of the database, background tasks and provider clients
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from knowledge_retrieval.api.v1 import health
from knowledge_retrieval.api.v1.router import router as v1_router
from knowledge_retrieval.config import get_settings
from knowledge_retrieval.database.session import close_db, init_db
from knowledge_retrieval.middleware import RequestIDMiddleware, TimingMiddleware
from knowledge_retrieval.services.bm25.segmenter import load_domain_terms
from knowledge_retrieval.services.embedding_service import close_embedding_services
from knowledge_retrieval.services.vector_store.registry import get_vector_store_registry
from knowledge_retrieval.utils.background import get_background_runner
from knowledge_retrieval.utils.errors import KnowledgeException
from knowledge_retrieval.utils.logging import get_logger, log_error, setup_logging

setup_logging()
logger = get_logger("main")

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database on startup; flush background work and close clients on shutdown."""
    logger.info("Starting Knowledge Retrieval service...")
    try:
        await init_db(create_tables=settings.is_development)
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}", exc_info=True)
        if settings.is_production:
            raise
        logger.warning("Database initialization failed in development mode; requests needing it will fail")

    if settings.bm25.use_jieba:
        load_domain_terms()

    logger.info("Knowledge Retrieval service started successfully")
    try:
        yield
    finally:
        logger.info("Shutting down Knowledge Retrieval service...")
        await get_background_runner().drain(timeout=10.0)
        await get_vector_store_registry().close_all()
        await close_embedding_services()
        await close_db()
        logger.info("Knowledge Retrieval service shut down")


app = FastAPI(
    title="Knowledge Retrieval Service",
    description="Document ingestion and hybrid (vector + BM25) retrieval for RAG",
    version="0.1.0",
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
    openapi_url="/openapi.json" if not settings.is_production else None,
    lifespan=lifespan,
)

app.add_middleware(TimingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=3600,
)


@app.exception_handler(KnowledgeException)
async def knowledge_exception_handler(request: Request, exc: KnowledgeException):
    log_error(exc, path=request.url.path, method=request.method)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.detail,
                "code": "HTTP_ERROR",
                "status_code": exc.status_code,
            }
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": {
                "message": "Validation error",
                "code": "VALIDATION_ERROR",
                "status_code": 422,
                "details": jsonable_encoder(exc.errors()),
            }
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    log_error(exc, path=request.url.path, method=request.method)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "message": "Internal server error",
                "code": "INTERNAL_ERROR",
                "status_code": 500,
            }
        },
    )


app.include_router(v1_router)

# Root-level probes for container orchestrators; also served under /api/v1
app.add_api_route("/health", health.health_check, methods=["GET"], tags=["health"], include_in_schema=False)
app.add_api_route("/ready", health.readiness_check, methods=["GET"], tags=["health"], include_in_schema=False)


@app.get("/", tags=["root"])
async def root():
    return {
        "service": "knowledge-retrieval",
        "version": "0.1.0",
        "status": "running",
        "environment": settings.environment.value,
    }


def run() -> None:
    import uvicorn

    uvicorn.run(
        "knowledge_retrieval.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.server.reload and settings.is_development,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()

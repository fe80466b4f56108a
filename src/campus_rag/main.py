"""FastAPI application entry point.

This module creates and configures the FastAPI application instance with:
- Middleware (RequestID, Timing, ErrorLogging)
- Exception handlers (RagException, HTTPException, ValidationError, general)
- API routers (v1, plus /rag/* at root level)
- Health check endpoints (/health, /ready)
- Startup/shutdown lifecycle (database, Qdrant, providers, indexing workers)
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from qdrant_client import AsyncQdrantClient
from starlette.exceptions import HTTPException as StarletteHTTPException

from campus_rag.config import get_settings
from campus_rag.database.session import close_db, get_session_factory, init_db
from campus_rag.middleware import setup_middleware
from campus_rag.providers.factory import build_completion_providers, build_embedding_provider
from campus_rag.services.chunking_service import get_chunking_service
from campus_rag.services.completion_service import CompletionOrchestrator
from campus_rag.services.embedding_cache import build_query_cache
from campus_rag.services.embedding_service import EmbeddingService
from campus_rag.services.rag_service import RagService
from campus_rag.services.retriever import Retriever
from campus_rag.services.usage_gate import build_usage_gate
from campus_rag.services.vector_store import VectorStore
from campus_rag.utils.errors import DimensionMismatchError, RagException
from campus_rag.utils.logging import get_logger, log_error, setup_logging
from campus_rag.workers.indexing_coordinator import IndexingCoordinator
from campus_rag.workers.indexing_pool import IndexingWorkerPool

# Set up logging first
setup_logging()
logger = get_logger("main")

settings = get_settings()


def create_qdrant_client() -> AsyncQdrantClient:
    """Local (':memory:' or path) client when QDRANT_LOCATION is set, remote otherwise."""
    if settings.qdrant.location:
        return AsyncQdrantClient(location=settings.qdrant.location)
    return AsyncQdrantClient(
        url=settings.qdrant.url,
        api_key=settings.qdrant.api_key,
        timeout=settings.qdrant.timeout,
    )


async def build_rag_service(qdrant_client: AsyncQdrantClient) -> RagService:
    """
    Wire the RAG pipeline.

    Raises:
        DimensionMismatchError: If the embedding provider or the existing
            collection disagree with EMBEDDING_DIMENSION
    """
    session_factory = get_session_factory()
    chunking_service = get_chunking_service()

    embedding_service = EmbeddingService(
        build_embedding_provider(),
        token_counter=chunking_service.count_tokens,
        query_cache=build_query_cache(),
    )
    vector_store = VectorStore(
        qdrant_client,
        session_factory=session_factory,
        dimension=settings.embedding.embedding_dimension,
    )
    await vector_store.ensure_collection()

    usage_gate = build_usage_gate()
    coordinator = IndexingCoordinator(
        chunking_service=chunking_service,
        embedding_service=embedding_service,
        vector_store=vector_store,
        usage_gate=usage_gate,
        session_factory=session_factory,
    )
    return RagService(
        retriever=Retriever(
            embedding_service,
            vector_store,
            token_counter=chunking_service.count_tokens,
        ),
        orchestrator=CompletionOrchestrator(build_completion_providers()),
        usage_gate=usage_gate,
        vector_store=vector_store,
        coordinator=coordinator,
        worker_pool=IndexingWorkerPool(coordinator),
        session_factory=session_factory,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan events.

    Handles startup and shutdown of:
    - Database engine (documents, query log)
    - Qdrant client (chunk vectors)
    - Provider adapters and the indexing worker pool
    """
    logger.info("Starting Campus RAG service...")
    qdrant_client: Optional[AsyncQdrantClient] = None
    try:
        await init_db()

        logger.info("Initializing Qdrant connection...")
        qdrant_client = create_qdrant_client()
        app.state.qdrant_client = qdrant_client

        try:
            rag_service = await build_rag_service(qdrant_client)
            await rag_service.worker_pool.start()
            app.state.rag_service = rag_service
            logger.info("RAG pipeline initialized successfully")
        except DimensionMismatchError:
            raise
        except Exception as e:
            logger.error(f"Failed to initialize RAG pipeline: {e}", exc_info=True)
            if settings.is_production:
                raise  # Fail fast in production

        logger.info("Campus RAG service started successfully")
        yield
    except Exception as e:
        logger.error(f"Failed to start Campus RAG service: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutting down Campus RAG service...")
        try:
            rag_service: Optional[RagService] = getattr(app.state, "rag_service", None)
            if rag_service is not None and rag_service.worker_pool is not None:
                await rag_service.worker_pool.stop()
            if qdrant_client is not None:
                await qdrant_client.close()
            await close_db()
            logger.info("Campus RAG service shut down successfully")
        except Exception as e:
            logger.error(f"Error during shutdown: {e}", exc_info=True)


app = FastAPI(
    title="Campus RAG",
    description=(
        "Retrieval-augmented answers over students' course documents: chunking, embedding, "
        "scoped vector search and grounded completions with provider failover."
    ),
    version="0.1.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    debug=settings.debug,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "health", "description": "Health check and readiness endpoints"},
        {"name": "rag", "description": "Document indexing and question answering"},
        {"name": "v1", "description": "API v1 information and metadata"},
    ],
)

setup_middleware(app)

# Include API routers
from campus_rag.api.v1 import rag  # noqa: E402
from campus_rag.api.v1.router import router as v1_router  # noqa: E402

app.include_router(v1_router)
# /rag/* is also served at root level for the web client
app.include_router(rag.router)


@app.get("/health", tags=["health"], include_in_schema=False)
async def root_health_check():
    """Root-level health check endpoint (for Kubernetes/Docker)."""
    from campus_rag.api.v1.health import health_check

    return await health_check()


@app.get("/ready", tags=["health"], include_in_schema=False)
async def root_readiness_check(request: Request):
    """Root-level readiness check endpoint (for Kubernetes/Docker)."""
    from campus_rag.api.v1.health import readiness_check

    return await readiness_check(request)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "campus-rag",
        "version": "0.1.0",
        "status": "running",
        "environment": settings.environment.value,
    }


# Exception handlers
@app.exception_handler(RagException)
async def rag_exception_handler(request: Request, exc: RagException) -> JSONResponse:
    """Handle custom RAG exceptions."""
    log_error(
        exc,
        context={
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.status_code,
            "code": exc.code,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions (401, 404, etc.)."""
    if exc.status_code == 404:
        logger.warning(f"404 Not Found: {request.method} {request.url.path}")
    else:
        log_error(
            exc,
            context={
                "method": request.method,
                "path": request.url.path,
                "status_code": exc.status_code,
            },
        )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": exc.detail,
                "code": "HTTP_ERROR",
                "status_code": exc.status_code,
                "details": {},
            }
        },
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request validation errors."""
    errors = []
    for error in exc.errors():
        errors.append(
            {
                "field": ".".join(str(loc) for loc in error.get("loc", [])),
                "message": error.get("msg"),
                "type": error.get("type"),
            }
        )

    logger.warning(f"Validation error: {request.method} {request.url.path} - {errors}")

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": {
                "message": "Validation failed",
                "code": "VALIDATION_ERROR",
                "status_code": 422,
                "details": {
                    "validation_errors": errors,
                },
            }
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle all other unhandled exceptions."""
    log_error(
        exc,
        context={
            "method": request.method,
            "path": request.url.path,
            "unhandled": True,
        },
    )

    # Don't expose internal error details in production
    if settings.is_production:
        message = "An internal server error occurred"
    else:
        message = str(exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "message": message,
                "code": "INTERNAL_SERVER_ERROR",
                "status_code": 500,
                "details": {} if settings.is_production else {"exception_type": type(exc).__name__},
            }
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "campus_rag.main:app",
        host=settings.server.host,
        port=settings.server.port,
        reload=settings.server.reload and settings.is_development,
        log_level=settings.log_level.lower(),
    )

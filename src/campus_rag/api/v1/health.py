"""Health check endpoints."""

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from campus_rag.config import get_settings
from campus_rag.database.session import check_connection
from campus_rag.utils.logging import get_logger

logger = get_logger("health")
settings = get_settings()

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """
    Health check endpoint.

    Returns basic service health status. This endpoint does not check
    external dependencies and will always return healthy if the service is running.
    """
    logger.debug("Health check requested")
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "environment": settings.environment.value,
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check(request: Request):
    """
    Readiness check endpoint.

    Checks connectivity to external dependencies:
    - Database (documents and query log)
    - Qdrant (chunk vectors)

    Returns 503 if any dependency is unavailable.
    """
    logger.debug("Readiness check requested")

    checks = {
        "database": await check_connection(),
        "qdrant": False,
    }

    qdrant_client = getattr(request.app.state, "qdrant_client", None)
    if qdrant_client is not None:
        try:
            await qdrant_client.get_collections()
            checks["qdrant"] = True
        except Exception as e:
            logger.warning(f"Qdrant connection check failed: {e}")

    body = {
        "app_name": settings.app_name,
        "environment": settings.environment.value,
        "checks": checks,
    }

    rag_service = getattr(request.app.state, "rag_service", None)
    retriever = getattr(rag_service, "retriever", None)
    query_cache = retriever.embedding_service.query_cache if retriever is not None else None
    if query_cache is not None:
        body["embedding_cache"] = query_cache.stats()

    if not all(checks.values()):
        logger.warning(f"Readiness check failed: {checks}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", **body},
        )

    return {"status": "ready", **body}

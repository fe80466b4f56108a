"""API v1 router aggregation.

All v1 endpoints are prefixed with `/api/v1`.
"""

from fastapi import APIRouter

from campus_rag.api.v1 import health, rag

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
router.include_router(rag.router)


@router.get(
    "/",
    summary="API Information",
    description="Get API version and status information",
    tags=["v1"],
)
async def api_info():
    """Get API v1 information."""
    return {
        "version": "v1",
        "status": "active",
        "service": "campus-rag",
        "endpoints": {
            "health": "/api/v1/health",
            "ready": "/api/v1/ready",
            "rag": {
                "ingest": "/api/v1/rag/ingest/{resourceId}",
                "query": "/api/v1/rag/query",
                "document": "/api/v1/rag/documents/{resourceId}",
                "stats": "/api/v1/rag/stats",
            },
        },
    }

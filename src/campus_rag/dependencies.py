"""FastAPI dependencies for the Campus RAG service."""

from typing import Optional

from fastapi import HTTPException, Request, status

from campus_rag.services.rag_service import RagService
from campus_rag.utils.logging import get_logger

logger = get_logger("dependencies")


async def get_rag_service(request: Request) -> RagService:
    """
    Get the RagService built during startup.

    Raises:
        HTTPException: If the service failed to initialize (503)
    """
    rag_service: Optional[RagService] = getattr(request.app.state, "rag_service", None)

    if rag_service is None:
        logger.error("RAG service not available in app state")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="RAG service is not available (providers or stores not initialized)",
        )

    return rag_service

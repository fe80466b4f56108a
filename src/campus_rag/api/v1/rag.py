"""RAG endpoints: ingestion, question answering, summaries, index status and stats."""

from fastapi import APIRouter, Depends, Query, Response, status

from campus_rag.auth.internal_service import CurrentOwnerDep, InternalAuthDep
from campus_rag.dependencies import get_rag_service
from campus_rag.models.completion import AnswerDepth
from campus_rag.models.rag import (
    DocumentStatusResponse,
    IngestResponse,
    QueryRequest,
    QueryResponse,
    StatsResponse,
    SummaryResponse,
)
from campus_rag.services.rag_service import RagService
from campus_rag.utils.logging import get_logger

logger = get_logger("rag_api")

router = APIRouter(prefix="/rag", tags=["rag"], dependencies=[InternalAuthDep])


@router.post(
    "/ingest/{resource_id}",
    response_model=IngestResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Index a document",
    description=(
        "Queue an indexing run for a document whose text has already been extracted. "
        "Returns immediately; poll GET /rag/documents/{resourceId} for the outcome."
    ),
)
async def ingest_document(
    resource_id: str,
    owner_id: str = CurrentOwnerDep,
    rag_service: RagService = Depends(get_rag_service),
) -> IngestResponse:
    """
    Start indexing a document.

    - 404 if the document does not exist or belongs to someone else
    - 409 if an indexing run is already in flight
    - 403 if the plan's indexing quota is exhausted
    """
    logger.info(f"Ingest requested: document_id={resource_id}, owner_id={owner_id}")
    return await rag_service.ingest(owner_id, resource_id)


@router.post(
    "/query",
    response_model=QueryResponse,
    status_code=status.HTTP_200_OK,
    summary="Ask a question about your documents",
)
async def query(
    payload: QueryRequest,
    owner_id: str = CurrentOwnerDep,
    rag_service: RagService = Depends(get_rag_service),
) -> QueryResponse:
    """
    Answer a question grounded in the caller's indexed documents.

    - 403 if the plan's query quota is exhausted (no provider is called)
    - 503 if every completion provider failed
    - 502 if the embedding provider failed
    """
    return await rag_service.query(owner_id, payload)


@router.get(
    "/documents/{resource_id}",
    response_model=DocumentStatusResponse,
    summary="Indexing status of a document",
)
async def document_status(
    resource_id: str,
    owner_id: str = CurrentOwnerDep,
    rag_service: RagService = Depends(get_rag_service),
) -> DocumentStatusResponse:
    return await rag_service.document_status(owner_id, resource_id)


@router.delete(
    "/documents/{resource_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Remove a document from the index",
)
async def delete_document_index(
    resource_id: str,
    owner_id: str = CurrentOwnerDep,
    rag_service: RagService = Depends(get_rag_service),
) -> Response:
    await rag_service.delete_document_index(owner_id, resource_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/stats",
    response_model=StatsResponse,
    summary="Query usage statistics",
)
async def stats(
    owner_id: str = CurrentOwnerDep,
    rag_service: RagService = Depends(get_rag_service),
) -> StatsResponse:
    """Total queries, total tokens and the ten most recent queries of the caller."""
    return await rag_service.stats(owner_id)


@router.get(
    "/summary/{resource_id}",
    response_model=SummaryResponse,
    summary="Structured study summary of a document",
)
async def summarize_document(
    resource_id: str,
    depth: AnswerDepth = Query(default=AnswerDepth.INTERMEDIATE),
    owner_id: str = CurrentOwnerDep,
    rag_service: RagService = Depends(get_rag_service),
) -> SummaryResponse:
    """
    Summarize a document: theoretical context, key ideas, definitions, examples,
    common mistakes, a review checklist and references.

    - 404 if the document does not exist or belongs to someone else
    - 403 if the plan's query quota is exhausted
    - 503 if every completion provider failed
    """
    return await rag_service.summarize(owner_id, resource_id, depth=depth)

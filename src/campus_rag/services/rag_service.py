"""RAG facade: quota, retrieval, completion and bookkeeping for queries and summaries."""

import json
import re
import time
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campus_rag.config import get_settings
from campus_rag.database.models import IndexState
from campus_rag.database.session import get_session_context
from campus_rag.models.chunk import ContextBundle, OwnerScope, ScoredChunk
from campus_rag.models.completion import Answer, AnswerDepth
from campus_rag.models.rag import (
    Citation,
    DocumentStatusResponse,
    IngestResponse,
    QueryRequest,
    QueryResponse,
    RecentQuery,
    StatsResponse,
    StudySummary,
    SummaryResponse,
)
from campus_rag.models.usage import UsageOperation
from campus_rag.repositories.document_repository import DocumentRepository
from campus_rag.repositories.rag_query_repository import RagQueryRepository
from campus_rag.services.completion_service import CompletionOrchestrator
from campus_rag.services.retriever import Retriever
from campus_rag.services.usage_gate import UsageGate
from campus_rag.services.vector_store import VectorStore
from campus_rag.utils.errors import AlreadyIndexing, InvalidInput, NotFoundError, RagException
from campus_rag.utils.logging import get_logger, log_context
from campus_rag.workers.indexing_coordinator import IndexingCoordinator
from campus_rag.workers.indexing_pool import IndexingWorkerPool

logger = get_logger("rag_service")
settings = get_settings()

NO_CONTEXT_ANSWER = (
    "I could not find passages in your course material that answer this question. "
    "Try rephrasing it or index more documents for this subject."
)
NO_PROVIDER = "none"

_JSON_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_summary(text: str) -> Tuple[StudySummary, bool]:
    """
    Read the model's JSON summary, tolerating a Markdown code fence around it.

    Returns the summary and whether it was structured. Output that is not a
    valid summary object comes back whole as ``theoretical_context``.
    """
    raw = (text or "").strip()
    fenced = _JSON_FENCE.match(raw)
    if fenced:
        raw = fenced.group(1)
    try:
        return StudySummary.model_validate(json.loads(raw)), True
    except (ValueError, ValidationError):
        logger.warning("Summary output is not valid JSON, returning it as text")
        return StudySummary(theoretical_context=(text or "").strip()), False


class RagService:
    """Entry point used by the HTTP layer for queries, summaries, ingestion and stats."""

    def __init__(
        self,
        retriever: Retriever,
        orchestrator: CompletionOrchestrator,
        usage_gate: UsageGate,
        vector_store: VectorStore,
        coordinator: Optional[IndexingCoordinator] = None,
        worker_pool: Optional[IndexingWorkerPool] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.retriever = retriever
        self.orchestrator = orchestrator
        self.usage_gate = usage_gate
        self.vector_store = vector_store
        self.coordinator = coordinator
        self.worker_pool = worker_pool
        self._session_factory = session_factory

    async def query(self, owner_id: str, request: QueryRequest) -> QueryResponse:
        """
        Answer a question from the owner's indexed documents.

        Raises:
            QuotaExceeded: Before any provider call when the plan limit is reached
            NoProviderAvailable: Every completion provider failed (no usage recorded)
        """
        with log_context(owner_id=owner_id):
            return await self._query(owner_id, request)

    async def _query(self, owner_id: str, request: QueryRequest) -> QueryResponse:
        started = time.perf_counter()
        await self.usage_gate.ensure_allowed(owner_id, UsageOperation.RAG_QUERY)

        scope = OwnerScope(
            owner_id=owner_id,
            subject_id=request.subject_id,
            document_ids=request.resource_ids,
        )
        bundle = await self.retriever.retrieve(
            request.query, scope, top_k=request.top_k, min_score=request.min_score
        )

        if bundle.is_empty:
            logger.info(f"No relevant passages: owner_id={owner_id}, subject_id={request.subject_id}")
            return QueryResponse(
                answer=NO_CONTEXT_ANSWER,
                citations=[],
                provider_used=NO_PROVIDER,
                tokens_used=0,
                processing_time_ms=self._elapsed_ms(started),
            )

        answer = await self.orchestrator.answer(
            request.query, bundle, style=request.style, depth=request.depth
        )
        processing_time_ms = self._elapsed_ms(started)

        await self._record_usage(owner_id)
        await self._log_query(owner_id, request, answer, len(bundle.chunks), processing_time_ms)

        return QueryResponse(
            answer=answer.text,
            citations=self._citations(answer, bundle),
            provider_used=answer.provider_used,
            tokens_used=answer.tokens_used,
            processing_time_ms=processing_time_ms,
        )

    async def summarize(
        self,
        owner_id: str,
        document_id: str,
        depth: AnswerDepth = AnswerDepth.INTERMEDIATE,
    ) -> SummaryResponse:
        """
        Structured study summary of a document.

        The leading indexed chunks (in ordinal order) are summarized; a document
        that was never indexed is summarized from its extracted text. Summaries
        count against the query quota.

        Raises:
            NotFoundError: Unknown or foreign document
            InvalidInput: The document has no text
            QuotaExceeded: Before any provider call when the plan limit is reached
            NoProviderAvailable: Every completion provider failed (no usage recorded)
        """
        config = settings.summary
        with log_context(owner_id=owner_id, document_id=document_id):
            async with get_session_context(self._session_factory) as session:
                document = await DocumentRepository(session).get_owned(document_id, owner_id)
            if document is None:
                raise NotFoundError("Document", document_id)

            chunks = (await self.vector_store.list_chunks(document_id))[: config.max_chunks]
            content = "\n\n".join(c.text for c in chunks) if chunks else (document.content or "")
            if not content.strip():
                raise InvalidInput("Document has no text to summarize", details={"document_id": document_id})
            if len(content) > config.max_chars:
                content = content[: config.max_chars] + "..."

            await self.usage_gate.ensure_allowed(owner_id, UsageOperation.RAG_QUERY)

            messages = self.orchestrator.prompt_builder.build_summary_messages(content, depth=depth)
            provider, result = await self.orchestrator.generate(
                messages, max_tokens=config.max_tokens, temperature=config.temperature
            )
            summary, structured = parse_summary(result.text)
            logger.info(
                f"Summary generated: provider={provider.name}, chunks={len(chunks)}, "
                f"chars={len(content)}, structured={structured}"
            )

            await self._record_usage(owner_id)
            return SummaryResponse(
                **summary.model_dump(),
                document_id=document_id,
                depth=depth,
                structured=structured,
                provider_used=provider.name,
                tokens_used=result.tokens_used,
            )

    async def ingest(self, owner_id: str, document_id: str) -> IngestResponse:
        """Take the indexing lease and queue the run on the worker pool."""
        if self.coordinator is None or self.worker_pool is None:
            raise RagException("Indexing is not available", status_code=503, code="INDEXING_UNAVAILABLE")

        state = await self.coordinator.begin_indexing(document_id, owner_id=owner_id)
        try:
            self.worker_pool.submit(document_id)
        except RagException as e:
            await self.coordinator.mark_failed(document_id, e.message)
            raise
        return IngestResponse(document_id=document_id, state=state)

    async def document_status(self, owner_id: str, document_id: str) -> DocumentStatusResponse:
        async with get_session_context(self._session_factory) as session:
            document = await DocumentRepository(session).get_owned(document_id, owner_id)
        if document is None:
            raise NotFoundError("Document", document_id)
        return DocumentStatusResponse(
            document_id=document.id,
            state=IndexState(document.index_state),
            chunk_count=document.chunk_count,
            indexed_at=document.indexed_at,
            error=document.index_error,
        )

    async def delete_document_index(self, owner_id: str, document_id: str) -> None:
        """
        Remove the document's chunks from the index.

        Raises:
            NotFoundError: Unknown or foreign document
            AlreadyIndexing: A run is in flight
        """
        async with get_session_context(self._session_factory) as session:
            document = await DocumentRepository(session).get_owned(document_id, owner_id)
        if document is None:
            raise NotFoundError("Document", document_id)
        if document.index_state == IndexState.INDEXING.value:
            raise AlreadyIndexing(document_id)
        await self.vector_store.delete_document(document_id)

    async def stats(self, owner_id: str) -> StatsResponse:
        async with get_session_context(self._session_factory) as session:
            stats = await RagQueryRepository(session).stats_for_owner(owner_id, recent=10)
        return StatsResponse(
            total_queries=stats["total_queries"],
            total_tokens_used=stats["total_tokens_used"],
            recent_queries=[
                RecentQuery(
                    id=row.id,
                    query=row.query,
                    provider_used=row.provider_used,
                    tokens_used=row.tokens_used,
                    created_at=row.created_at,
                )
                for row in stats["recent_queries"]
            ],
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)

    @staticmethod
    def _citations(answer: Answer, bundle: ContextBundle) -> List[Citation]:
        by_id: Dict[str, ScoredChunk] = {s.chunk.chunk_id: s for s in bundle.chunks}
        citations: List[Citation] = []
        for chunk_id in answer.cited_chunk_ids:
            scored = by_id.get(chunk_id)
            if scored is None:
                continue
            chunk = scored.chunk
            citations.append(
                Citation(
                    document_id=chunk.document_id,
                    chunk_id=chunk.chunk_id,
                    ordinal=chunk.ordinal,
                    offset_start=chunk.offset_start,
                    offset_end=chunk.offset_end,
                    score=scored.score,
                )
            )
        return citations

    async def _record_usage(self, owner_id: str) -> None:
        try:
            await self.usage_gate.record_usage(owner_id, UsageOperation.RAG_QUERY)
        except RagException as e:
            logger.error(f"Failed to record query usage: owner_id={owner_id} - {e.message}")

    async def _log_query(
        self,
        owner_id: str,
        request: QueryRequest,
        answer: Answer,
        chunks_used: int,
        processing_time_ms: int,
    ) -> None:
        try:
            async with get_session_context(self._session_factory) as session:
                await RagQueryRepository(session).create(
                    owner_id=owner_id,
                    subject_id=request.subject_id,
                    query=request.query,
                    provider_used=answer.provider_used,
                    tokens_used=answer.tokens_used,
                    chunks_used=chunks_used,
                    processing_time_ms=processing_time_ms,
                )
        except RagException as e:
            logger.error(f"Failed to log query: owner_id={owner_id} - {e.message}")

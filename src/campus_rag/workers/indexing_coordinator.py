"""Indexing coordinator: one document from text to searchable chunks."""

import asyncio
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campus_rag.config import get_settings
from campus_rag.database.models import Document, IndexState, utcnow
from campus_rag.database.session import get_session_context
from campus_rag.models.usage import UsageOperation
from campus_rag.repositories.document_repository import DocumentRepository
from campus_rag.services.chunking_service import ChunkingService
from campus_rag.services.embedding_service import EmbeddingService
from campus_rag.services.usage_gate import UsageGate
from campus_rag.services.vector_store import VectorStore
from campus_rag.utils.errors import (
    AlreadyIndexing,
    InvalidInput,
    NotFoundError,
    RagException,
)
from campus_rag.utils.logging import get_logger, log_context

logger = get_logger("indexing_coordinator")
settings = get_settings()


class IndexingCoordinator:
    """
    Run the indexing pipeline for a document.

    Processing pipeline:
    1. Take the document's indexing lease (state -> INDEXING)
    2. Chunk the extracted text
    3. Embed every chunk
    4. Replace the document's chunk set in the vector store
    5. Mark INDEXED and record usage, or mark FAILED with the error

    Exactly one run per document is in flight: the lease is a conditional
    UPDATE in the documents table, and an in-process lock guards against a
    second run in the same worker after a lease expiry.
    """

    def __init__(
        self,
        chunking_service: ChunkingService,
        embedding_service: EmbeddingService,
        vector_store: VectorStore,
        usage_gate: UsageGate,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        lease_seconds: Optional[int] = None,
        min_content_chars: Optional[int] = None,
    ):
        self.chunking_service = chunking_service
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.usage_gate = usage_gate
        self._session_factory = session_factory
        self.lease_seconds = lease_seconds or settings.indexing.lease_seconds
        self.min_content_chars = (
            min_content_chars if min_content_chars is not None else settings.indexing.min_content_chars
        )
        self._locks: Dict[str, asyncio.Lock] = {}

    def is_running(self, document_id: str) -> bool:
        lock = self._locks.get(document_id)
        return lock is not None and lock.locked()

    async def begin_indexing(self, document_id: str, owner_id: Optional[str] = None) -> IndexState:
        """
        Check ownership and quota, then take the indexing lease.

        Args:
            document_id: Document to index
            owner_id: When given, the document must belong to this owner

        Returns:
            IndexState.INDEXING

        Raises:
            NotFoundError: Unknown document (or owned by someone else)
            QuotaExceeded: Usage gate denied the indexing
            AlreadyIndexing: Another run holds the lease
        """
        async with get_session_context(self._session_factory) as session:
            repository = DocumentRepository(session)
            if owner_id is not None:
                document = await repository.get_owned(document_id, owner_id)
            else:
                document = await repository.get_by_id(document_id)
            if document is None:
                raise NotFoundError("Document", document_id)
            owner = document.owner_id

        await self.usage_gate.ensure_allowed(owner, UsageOperation.DOCUMENT_INDEXED)

        if self.is_running(document_id):
            raise AlreadyIndexing(document_id)

        async with get_session_context(self._session_factory) as session:
            acquired = await DocumentRepository(session).acquire_lease(
                document_id, self.lease_seconds
            )
        if not acquired:
            raise AlreadyIndexing(document_id)

        logger.info(f"Indexing lease acquired: document_id={document_id}")
        return IndexState.INDEXING

    async def run_indexing(self, document_id: str) -> int:
        """
        Execute a run for a document whose lease the caller holds.

        Returns:
            Number of chunks now active for the document

        Raises:
            AlreadyIndexing: A run for this document is already executing here
            RagException: Whatever failed; the document is marked FAILED first
        """
        lock = self._locks.setdefault(document_id, asyncio.Lock())
        if lock.locked():
            raise AlreadyIndexing(document_id)

        try:
            async with lock:
                return await self._run(document_id)
        finally:
            if not lock.locked():
                self._locks.pop(document_id, None)

    async def index_document(self, document_id: str) -> int:
        """Take the lease and index the document in the caller's task."""
        await self.begin_indexing(document_id)
        return await self.run_indexing(document_id)

    async def _run(self, document_id: str) -> int:
        async with get_session_context(self._session_factory) as session:
            document = await DocumentRepository(session).get_by_id(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)

        with log_context(owner_id=document.owner_id, document_id=document_id):
            return await self._index(document)

    async def _index(self, document: Document) -> int:
        document_id = document.id
        owner_id = document.owner_id
        logger.info(
            f"Processing indexing run: document_id={document_id}, owner_id={owner_id}, "
            f"text_length={len(document.content or '')}"
        )

        try:
            content = document.content or ""
            if len(content.strip()) < self.min_content_chars:
                raise InvalidInput(
                    "Document text is too short to index",
                    details={"length": len(content.strip()), "min_length": self.min_content_chars},
                )

            chunks = await asyncio.to_thread(self.chunking_service.chunk_text, content)
            logger.info(
                f"Document chunked: document_id={document_id}, chunks={len(chunks)}, "
                f"total_tokens={sum(c.token_count for c in chunks)}"
            )

            vectors = await self.embedding_service.embed([c.text for c in chunks])
            logger.info(
                f"Embeddings generated: document_id={document_id}, vectors={len(vectors)}, "
                f"provider={self.embedding_service.provider.name}"
            )

            generation = await self.vector_store.upsert_chunks(
                document_id,
                chunks,
                vectors,
                embedding_model=self.embedding_service.provider.model,
            )

            async with get_session_context(self._session_factory) as session:
                await DocumentRepository(session).mark_indexed(
                    document_id, chunk_count=len(chunks), indexed_at=utcnow()
                )
        except asyncio.CancelledError:
            await self.mark_failed(document_id, "Indexing was cancelled")
            raise
        except RagException as e:
            logger.error(
                f"Indexing failed: document_id={document_id} - {e.message} ({e.code})",
                exc_info=True,
            )
            await self.mark_failed(document_id, f"{e.code}: {e.message}")
            raise
        except Exception as e:
            logger.error(f"Unexpected error indexing document: {document_id} - {e}", exc_info=True)
            await self.mark_failed(document_id, str(e) or e.__class__.__name__)
            raise

        logger.info(
            f"Document indexed: document_id={document_id}, generation={generation}, chunks={len(chunks)}"
        )
        await self._record_usage(owner_id, document_id)
        return len(chunks)

    async def mark_failed(self, document_id: str, error: str) -> None:
        """Record a failed run and release the lease; never raises."""
        try:
            async with get_session_context(self._session_factory) as session:
                await DocumentRepository(session).mark_failed(document_id, error)
        except Exception as update_error:
            logger.error(
                f"Failed to mark document failed: document_id={document_id} - {update_error}",
                exc_info=True,
            )

    async def _record_usage(self, owner_id: str, document_id: str) -> None:
        try:
            await self.usage_gate.record_usage(owner_id, UsageOperation.DOCUMENT_INDEXED)
        except RagException as e:
            logger.error(
                f"Failed to record indexing usage: document_id={document_id}, owner_id={owner_id} - {e.message}"
            )

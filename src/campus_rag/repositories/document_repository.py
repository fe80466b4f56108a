"""Document repository: ownership lookups and indexing-state transitions."""

from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from campus_rag.database.models import Document, IndexState, utcnow
from campus_rag.repositories.base import BaseRepository
from campus_rag.utils.errors import DatabaseError
from campus_rag.utils.logging import get_logger

logger = get_logger("document_repository")

# Longest error message stored on a failed document
_MAX_ERROR_LENGTH = 2000


class DocumentRepository(BaseRepository[Document]):
    """Repository for the documents table.

    State transitions are conditional UPDATEs so that two processes racing on
    the same document cannot both believe they hold the indexing lease.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(Document, session)

    async def get_owned(self, document_id: str, owner_id: str) -> Optional[Document]:
        """Get a document only if it belongs to ``owner_id``."""
        try:
            result = await self.session.execute(
                select(Document).where(Document.id == document_id, Document.owner_id == owner_id)
            )
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error loading document {document_id}: {e}")
            raise DatabaseError("Failed to retrieve document") from e

    async def acquire_lease(self, document_id: str, lease_seconds: int) -> bool:
        """
        Move a document to INDEXING unless another run holds a live lease.

        Returns:
            True if this caller now holds the lease.
        """
        now = utcnow()
        stmt = (
            update(Document)
            .where(
                Document.id == document_id,
                or_(
                    Document.index_state != IndexState.INDEXING.value,
                    Document.lease_expires_at.is_(None),
                    Document.lease_expires_at < now,
                ),
            )
            .values(
                index_state=IndexState.INDEXING.value,
                index_error=None,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
            return result.rowcount == 1
        except SQLAlchemyError as e:
            logger.error(f"Error acquiring indexing lease for {document_id}: {e}")
            raise DatabaseError("Failed to acquire indexing lease") from e

    async def mark_indexed(self, document_id: str, chunk_count: int, indexed_at: datetime) -> None:
        """Record a successful run and release the lease."""
        await self._set_state(
            document_id,
            index_state=IndexState.INDEXED.value,
            index_error=None,
            chunk_count=chunk_count,
            indexed_at=indexed_at,
            lease_expires_at=None,
        )

    async def mark_failed(self, document_id: str, error: str) -> None:
        """Record a failed run (the previous chunk snapshot stays active) and release the lease."""
        await self._set_state(
            document_id,
            index_state=IndexState.FAILED.value,
            index_error=error[:_MAX_ERROR_LENGTH],
            lease_expires_at=None,
        )

    async def activate_generation(self, document_id: str, generation: int, chunk_count: int) -> None:
        """Point readers at a newly written chunk generation."""
        await self._set_state(document_id, active_generation=generation, chunk_count=chunk_count)

    async def clear_index(self, document_id: str) -> None:
        """Forget the document's chunk snapshot."""
        await self._set_state(
            document_id,
            active_generation=None,
            chunk_count=0,
            indexed_at=None,
            index_state=IndexState.NOT_INDEXED.value,
        )

    async def list_active_snapshots(
        self,
        owner_id: str,
        subject_id: Optional[str] = None,
        document_ids: Optional[Sequence[str]] = None,
    ) -> List[Tuple[str, int]]:
        """
        Resolve an owner scope to ``(document_id, active_generation)`` pairs.

        Only documents with a published chunk snapshot are returned.
        """
        query = select(Document.id, Document.active_generation).where(
            Document.owner_id == owner_id,
            Document.active_generation.is_not(None),
        )
        if subject_id:
            query = query.where(Document.subject_id == subject_id)
        if document_ids is not None:
            query = query.where(Document.id.in_(list(document_ids)))
        try:
            result = await self.session.execute(query)
            return [(row[0], int(row[1])) for row in result.all()]
        except SQLAlchemyError as e:
            logger.error(f"Error resolving owner scope for {owner_id}: {e}")
            raise DatabaseError("Failed to resolve search scope") from e

    async def _set_state(self, document_id: str, **values) -> None:
        values["updated_at"] = utcnow()
        try:
            await self.session.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            logger.error(f"Error updating document {document_id}: {e}")
            raise DatabaseError("Failed to update document") from e

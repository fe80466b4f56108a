"""SQLAlchemy database models."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class IndexState(str, Enum):
    """Indexing lifecycle of a document."""

    NOT_INDEXED = "not_indexed"
    INDEXING = "indexing"
    INDEXED = "indexed"
    FAILED = "failed"


class Document(Base):
    """Course document with its already-extracted text.

    Rows are created and owned by the resource module; this service writes only
    the ``index_*``, ``active_generation``, ``chunk_count``, ``indexed_at`` and
    ``lease_expires_at`` columns.
    """

    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        index=True,
    )

    # Ownership
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    subject_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)

    # Content
    title: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Indexing state
    index_state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=IndexState.NOT_INDEXED.value, index=True
    )
    index_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    active_generation: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    indexed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (Index("ix_documents_owner_subject", "owner_id", "subject_id"),)

    def __repr__(self) -> str:
        """String representation of Document."""
        return f"<Document(id={self.id}, owner_id={self.owner_id}, state={self.index_state})>"


class RagQuery(Base):
    """One answered question, kept for usage statistics."""

    __tablename__ = "rag_queries"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        index=True,
    )
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    subject_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    query: Mapped[str] = mapped_column(Text, nullable=False)
    provider_used: Mapped[str] = mapped_column(String(100), nullable=False)
    tokens_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    chunks_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processing_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )

    def __repr__(self) -> str:
        """String representation of RagQuery."""
        return f"<RagQuery(id={self.id}, owner_id={self.owner_id}, provider={self.provider_used})>"

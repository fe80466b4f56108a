"""Chunk and retrieval models."""

from typing import List, Optional

from pydantic import BaseModel, Field


class TextChunk(BaseModel):
    """A chunk of text produced by the chunking service."""

    ordinal: int = Field(..., ge=0, description="0-based position of this chunk within the document")
    text: str = Field(..., description="Exact slice of the source text")
    token_count: int = Field(..., ge=0, description="Token count of the chunk text")
    offset_start: int = Field(..., ge=0, description="Start character index in the source text")
    offset_end: int = Field(..., ge=0, description="End character index (exclusive) in the source text")


class StoredChunk(BaseModel):
    """A chunk as read back from the vector store."""

    chunk_id: str = Field(..., description="Vector store point id")
    document_id: str
    generation: int = Field(..., description="Index run that produced this chunk")
    ordinal: int
    text: str
    token_count: int = 0
    offset_start: int
    offset_end: int
    indexed_at: float = Field(default=0.0, description="Epoch seconds of the run that published it")


class ScoredChunk(BaseModel):
    """A stored chunk with its cosine similarity to the query."""

    chunk: StoredChunk
    score: float


class OwnerScope(BaseModel):
    """Which documents a search may read.

    ``owner_id`` is mandatory; ``subject_id`` and ``document_ids`` narrow it further.
    """

    owner_id: str = Field(..., min_length=1)
    subject_id: Optional[str] = None
    document_ids: Optional[List[str]] = None


class ContextBundle(BaseModel):
    """Ranked chunks plus the prompt context assembled from them."""

    query: str
    query_vector: List[float] = Field(default_factory=list, description="Embedding the search ran with")
    chunks: List[ScoredChunk] = Field(default_factory=list)
    assembled_text: str = ""
    token_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.chunks

"""Request and response models for the RAG API."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from campus_rag.database.models import IndexState
from campus_rag.models.completion import AnswerDepth, AnswerStyle


class CamelModel(BaseModel):
    """Base model exposing camelCase field names on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QueryRequest(CamelModel):
    """Body of POST /rag/query."""

    query: str = Field(..., min_length=5, max_length=1000, description="Question to answer")
    subject_id: Optional[str] = Field(default=None, description="Restrict to one subject")
    resource_ids: Optional[List[str]] = Field(
        default=None, description="Restrict to these documents"
    )
    top_k: Optional[int] = Field(default=None, ge=1, le=20, description="Chunks to retrieve")
    min_score: Optional[float] = Field(
        default=None, ge=0.0, le=1.0, description="Minimum cosine similarity"
    )
    style: AnswerStyle = Field(default=AnswerStyle.BALANCED)
    depth: AnswerDepth = Field(default=AnswerDepth.INTERMEDIATE)


class Citation(CamelModel):
    """A passage the answer drew on."""

    document_id: str
    chunk_id: str
    ordinal: int
    offset_start: int
    offset_end: int
    score: float


class QueryResponse(CamelModel):
    """Body returned by POST /rag/query."""

    answer: str
    citations: List[Citation] = Field(default_factory=list)
    provider_used: str
    tokens_used: int = 0
    processing_time_ms: int = 0


class IngestResponse(CamelModel):
    """Body returned by POST /rag/ingest/{resourceId}."""

    document_id: str
    state: IndexState


class DocumentStatusResponse(CamelModel):
    """Indexing status of a document."""

    document_id: str
    state: IndexState
    chunk_count: int = 0
    indexed_at: Optional[datetime] = None
    error: Optional[str] = None


class RecentQuery(CamelModel):
    """Entry of the recent-queries list in the stats response."""

    id: str
    query: str
    provider_used: str
    tokens_used: int
    created_at: datetime


class StatsResponse(CamelModel):
    """Body returned by GET /rag/stats."""

    total_queries: int
    total_tokens_used: int
    recent_queries: List[RecentQuery] = Field(default_factory=list)


class SummaryDefinition(CamelModel):
    term: str
    definition: str
    formula: Optional[str] = None


class SummaryExample(CamelModel):
    description: str
    solution: Optional[str] = None


class StudySummary(CamelModel):
    """Structured study summary of a document, as produced by the model."""

    theoretical_context: str = ""
    key_ideas: List[str] = Field(default_factory=list)
    definitions: List[SummaryDefinition] = Field(default_factory=list)
    examples: List[SummaryExample] = Field(default_factory=list)
    common_mistakes: List[str] = Field(default_factory=list)
    review_checklist: List[str] = Field(default_factory=list)
    references: List[str] = Field(default_factory=list)


class SummaryResponse(StudySummary):
    """Body returned by GET /rag/summary/{resourceId}."""

    document_id: str
    depth: AnswerDepth
    structured: bool = Field(
        default=True, description="False when the model's output was not valid JSON and is returned as text"
    )
    provider_used: str
    tokens_used: int = 0

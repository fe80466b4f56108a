"""Completion models."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class AnswerStyle(str, Enum):
    """Register of the generated answer."""

    FORMAL = "formal"
    PRACTICAL = "practical"
    BALANCED = "balanced"


class AnswerDepth(str, Enum):
    """How much detail the generated answer goes into."""

    BASIC = "basic"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class CompletionResult(BaseModel):
    """Raw result of a single provider call."""

    text: str
    model: str
    tokens_used: int = 0


class Answer(BaseModel):
    """Grounded answer produced by the completion orchestrator."""

    text: str
    cited_chunk_ids: List[str] = Field(default_factory=list)
    provider_used: str
    model: Optional[str] = None
    tokens_used: int = 0

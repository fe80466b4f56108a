"""Usage gate models."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class UsageOperation(str, Enum):
    """Billable operations reported to the billing service."""

    RAG_QUERY = "rag_query"
    DOCUMENT_INDEXED = "document_indexed"


class QuotaDecision(BaseModel):
    """Answer of a quota check. ``limit == -1`` means unlimited."""

    allowed: bool
    reason: Optional[str] = None
    current: int = 0
    limit: int = -1
    remaining: int = -1

"""Query log repository (usage statistics)."""

from typing import Any, Dict, List

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from campus_rag.database.models import RagQuery
from campus_rag.repositories.base import BaseRepository
from campus_rag.utils.errors import DatabaseError
from campus_rag.utils.logging import get_logger

logger = get_logger("rag_query_repository")


class RagQueryRepository(BaseRepository[RagQuery]):
    """Repository for the rag_queries table."""

    def __init__(self, session: AsyncSession):
        super().__init__(RagQuery, session)

    async def stats_for_owner(self, owner_id: str, recent: int = 10) -> Dict[str, Any]:
        """Total queries, total tokens and the most recent queries for an owner."""
        try:
            total_queries = await self.count({"owner_id": owner_id})
            tokens = await self.session.execute(
                select(func.coalesce(func.sum(RagQuery.tokens_used), 0)).where(
                    RagQuery.owner_id == owner_id
                )
            )
            result = await self.session.execute(
                select(RagQuery)
                .where(RagQuery.owner_id == owner_id)
                .order_by(RagQuery.created_at.desc())
                .limit(recent)
            )
            recent_rows: List[RagQuery] = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error loading query stats for {owner_id}: {e}")
            raise DatabaseError("Failed to load query statistics") from e

        return {
            "total_queries": total_queries,
            "total_tokens_used": int(tokens.scalar() or 0),
            "recent_queries": recent_rows,
        }

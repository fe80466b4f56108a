"""Retriever: query embedding, scoped vector search and context assembly."""

from typing import Callable, List, Optional, Sequence

from campus_rag.config import get_settings
from campus_rag.models.chunk import ContextBundle, OwnerScope, ScoredChunk
from campus_rag.services.embedding_service import EmbeddingService
from campus_rag.services.vector_store import VectorStore
from campus_rag.utils.logging import get_logger

logger = get_logger("retriever")
settings = get_settings()


def format_source(number: int, scored: ScoredChunk) -> str:
    """Render one context entry; ``number`` is the 1-based marker the model cites."""
    chunk = scored.chunk
    return (
        f"[S{number}] (document {chunk.document_id}, chars {chunk.offset_start}-{chunk.offset_end})\n"
        f"{chunk.text}"
    )


class Retriever:
    """Turn a question into a ranked, token-bounded context bundle."""

    def __init__(
        self,
        embedding_service: EmbeddingService,
        vector_store: VectorStore,
        max_context_tokens: Optional[int] = None,
        max_top_k: Optional[int] = None,
        token_counter: Optional[Callable[[str], int]] = None,
    ):
        self.embedding_service = embedding_service
        self.vector_store = vector_store
        self.max_context_tokens = max_context_tokens or settings.retrieval.max_context_tokens
        self.max_top_k = max_top_k or settings.retrieval.max_top_k
        self._token_counter = token_counter

    def _count_tokens(self, text: str) -> int:
        if self._token_counter is None:
            from campus_rag.services.chunking_service import get_chunking_service

            self._token_counter = get_chunking_service().count_tokens
        return self._token_counter(text)

    async def retrieve(
        self,
        query: str,
        scope: OwnerScope,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> ContextBundle:
        """
        Embed the query, search within ``scope`` and assemble the prompt context.

        Args:
            query: User question
            scope: Owner (and optionally subject/documents) the search may read
            top_k: Number of chunks to retrieve, clamped to ``[1, max_top_k]``
            min_score: Minimum cosine similarity

        Returns:
            ContextBundle with the chunks that fit the token budget, in rank order
        """
        top_k = top_k if top_k is not None else settings.retrieval.top_k
        top_k = max(1, min(top_k, self.max_top_k))

        query_vector = await self.embedding_service.embed_query(query)
        ranked = await self.vector_store.search(
            query_vector, scope, top_k=top_k, min_score=min_score
        )

        bundle = self.assemble(query, ranked, query_vector=query_vector)
        logger.info(
            f"Retrieved context: owner_id={scope.owner_id}, candidates={len(ranked)}, "
            f"kept={len(bundle.chunks)}, tokens={bundle.token_count}"
        )
        return bundle

    def assemble(
        self,
        query: str,
        ranked: Sequence[ScoredChunk],
        query_vector: Optional[Sequence[float]] = None,
    ) -> ContextBundle:
        """
        Fill the token budget greedily in rank order.

        The first chunk that does not fit ends the context: it and every
        lower-ranked chunk are dropped, never truncated.
        """
        kept: List[ScoredChunk] = []
        entries: List[str] = []
        used = 0
        for scored in ranked:
            entry = format_source(len(kept) + 1, scored)
            # Entries are joined by a blank line
            cost = self._count_tokens(entry if not entries else "\n\n" + entry)
            if used + cost > self.max_context_tokens:
                break
            kept.append(scored)
            entries.append(entry)
            used += cost

        return ContextBundle(
            query=query,
            query_vector=list(query_vector or []),
            chunks=kept,
            assembled_text="\n\n".join(entries),
            token_count=used,
        )

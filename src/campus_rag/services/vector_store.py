"""Vector store: chunk vectors in Qdrant, snapshot pointers in the documents table.

Every indexing run writes its chunks as a new *generation* of points tagged with
``snapshot = "{document_id}:{generation}"``. The points are invisible until the
document's ``active_generation`` is flipped in a single SQL transaction, and
searches only match snapshots that are active at the time they start. A reader
therefore sees either the complete previous chunk set or the complete new one.
The previous generation is retained until the next successful run so a search
that resolved its snapshots just before the flip still finds every point.
"""

import time
import uuid
from typing import Any, Dict, List, Optional

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchAny,
    MatchValue,
    PayloadSchemaType,
    PointStruct,
    Range,
    VectorParams,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from campus_rag.config import get_settings
from campus_rag.database.session import get_session_context
from campus_rag.models.chunk import OwnerScope, ScoredChunk, StoredChunk, TextChunk
from campus_rag.repositories.document_repository import DocumentRepository
from campus_rag.utils.errors import (
    DimensionMismatchError,
    InvalidInput,
    NotFoundError,
    RagException,
    VectorStoreError,
)
from campus_rag.utils.logging import get_logger

logger = get_logger("vector_store")
settings = get_settings()

# Deterministic namespace for point IDs derived from (document_id, generation, ordinal)
_POINT_ID_NAMESPACE = uuid.UUID("2f5d8f3e-61b4-4c1e-9a57-0c3f7d2b9e41")

_UPSERT_BATCH = 256


class VectorStore:
    """Persist chunk vectors and run owner-scoped cosine similarity search."""

    def __init__(
        self,
        client: AsyncQdrantClient,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        dimension: Optional[int] = None,
        collection_name: Optional[str] = None,
        oversample: Optional[int] = None,
    ):
        self._client = client
        self._session_factory = session_factory
        self.dimension = dimension or settings.embedding.embedding_dimension
        self.collection_name = collection_name or settings.qdrant.collection_name
        self._oversample = max(1, oversample or settings.qdrant.search_oversample)

    @staticmethod
    def make_point_id(document_id: str, generation: int, ordinal: int) -> str:
        """Create a stable UUID point id for a chunk."""
        return str(uuid.uuid5(_POINT_ID_NAMESPACE, f"{document_id}:{generation}:{ordinal}"))

    @staticmethod
    def snapshot_key(document_id: str, generation: int) -> str:
        return f"{document_id}:{generation}"

    async def ensure_collection(self) -> None:
        """
        Create the collection, or check that its vector size matches the configured dimension.

        Raises:
            DimensionMismatchError: If the existing collection was built for another dimension
        """
        try:
            if await self._client.collection_exists(self.collection_name):
                info = await self._client.get_collection(self.collection_name)
                vectors = info.config.params.vectors
                current_size = getattr(vectors, "size", None)
                if current_size is not None and int(current_size) != int(self.dimension):
                    raise DimensionMismatchError(
                        expected=self.dimension,
                        actual=int(current_size),
                        message=(
                            f"Collection {self.collection_name} holds {current_size}-d vectors but "
                            f"EMBEDDING_DIMENSION is {self.dimension}; re-index into a new collection"
                        ),
                    )
                return

            await self._client.create_collection(
                collection_name=self.collection_name,
                vectors_config=VectorParams(size=self.dimension, distance=Distance.COSINE),
            )
            for field, schema in (
                ("owner_id", PayloadSchemaType.KEYWORD),
                ("document_id", PayloadSchemaType.KEYWORD),
                ("snapshot", PayloadSchemaType.KEYWORD),
                ("generation", PayloadSchemaType.INTEGER),
            ):
                await self._client.create_payload_index(
                    collection_name=self.collection_name,
                    field_name=field,
                    field_schema=schema,
                )
            logger.info(
                f"Qdrant collection created: {self.collection_name} (vector_size={self.dimension})"
            )
        except RagException:
            raise
        except Exception as e:
            raise VectorStoreError(
                "Failed to ensure Qdrant collection",
                details={"collection": self.collection_name, "error": str(e)},
            ) from e

    async def upsert_chunks(
        self,
        document_id: str,
        chunks: List[TextChunk],
        vectors: List[List[float]],
        embedding_model: Optional[str] = None,
    ) -> int:
        """
        Atomically replace every chunk of a document.

        Callers must hold the document's indexing lease (single writer).

        Returns:
            The generation that is now active
        """
        if len(chunks) != len(vectors):
            raise InvalidInput(
                "Chunks and vectors length mismatch",
                details={"chunks": len(chunks), "vectors": len(vectors)},
            )
        for expected, chunk in enumerate(chunks):
            if chunk.ordinal != expected:
                raise InvalidInput(
                    "Chunk ordinals must be contiguous from 0",
                    details={"position": expected, "ordinal": chunk.ordinal},
                )
        for vector in vectors:
            if len(vector) != self.dimension:
                raise DimensionMismatchError(expected=self.dimension, actual=len(vector))

        async with get_session_context(self._session_factory) as session:
            document = await DocumentRepository(session).get_by_id(document_id)
            if document is None:
                raise NotFoundError("Document", document_id)
            owner_id = document.owner_id
            previous = document.active_generation

        generation = (previous or 0) + 1
        snapshot = self.snapshot_key(document_id, generation)
        indexed_at = time.time()

        await self._delete_where(self._snapshot_filter(snapshot))

        points = [
            PointStruct(
                id=self.make_point_id(document_id, generation, chunk.ordinal),
                vector=list(vector),
                payload=self._payload(
                    chunk, document_id, owner_id, generation, snapshot, indexed_at, embedding_model
                ),
            )
            for chunk, vector in zip(chunks, vectors)
        ]

        try:
            for start in range(0, len(points), _UPSERT_BATCH):
                await self._client.upsert(
                    collection_name=self.collection_name,
                    points=points[start : start + _UPSERT_BATCH],
                    wait=True,
                )
            async with get_session_context(self._session_factory) as session:
                await DocumentRepository(session).activate_generation(
                    document_id, generation, len(chunks)
                )
        except BaseException as e:
            await self._discard_snapshot(snapshot)
            if isinstance(e, RagException) or not isinstance(e, Exception):
                raise
            raise VectorStoreError(
                "Failed to write chunks",
                details={"document_id": document_id, "generation": generation, "error": str(e)},
            ) from e

        await self._prune_generations(document_id, keep_from=generation - 1)

        logger.info(
            f"Chunks replaced: document_id={document_id}, generation={generation}, "
            f"chunks={len(chunks)}, previous_generation={previous}"
        )
        return generation

    async def search(
        self,
        query_vector: List[float],
        scope: OwnerScope,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> List[ScoredChunk]:
        """
        Rank chunks inside ``scope`` by cosine similarity.

        Results scoring below ``min_score`` are dropped. Ties break by chunk ordinal
        ascending, then document recency descending.
        """
        top_k = top_k if top_k is not None else settings.retrieval.top_k
        min_score = min_score if min_score is not None else settings.retrieval.min_score
        if top_k <= 0:
            return []
        if len(query_vector) != self.dimension:
            raise DimensionMismatchError(expected=self.dimension, actual=len(query_vector))
        if not scope.owner_id:
            raise InvalidInput("Search scope requires an owner")

        async with get_session_context(self._session_factory) as session:
            snapshots = await DocumentRepository(session).list_active_snapshots(
                owner_id=scope.owner_id,
                subject_id=scope.subject_id,
                document_ids=scope.document_ids,
            )
        if not snapshots:
            return []

        query_filter = Filter(
            must=[
                FieldCondition(key="owner_id", match=MatchValue(value=scope.owner_id)),
                FieldCondition(
                    key="snapshot",
                    match=MatchAny(any=[self.snapshot_key(d, g) for d, g in snapshots]),
                ),
            ]
        )

        try:
            response = await self._client.query_points(
                collection_name=self.collection_name,
                query=list(query_vector),
                query_filter=query_filter,
                limit=top_k * self._oversample,
                with_payload=True,
            )
        except Exception as e:
            raise VectorStoreError(
                "Vector search failed",
                details={"collection": self.collection_name, "error": str(e)},
            ) from e

        results = [
            ScoredChunk(chunk=self._to_chunk(point.id, point.payload or {}), score=float(point.score))
            for point in response.points
            if point.score is not None and float(point.score) >= min_score
        ]
        results.sort(
            key=lambda r: (-r.score, r.chunk.ordinal, -r.chunk.indexed_at, r.chunk.document_id)
        )
        return results[:top_k]

    async def list_chunks(self, document_id: str) -> List[StoredChunk]:
        """Chunks of the document's active generation, ordered by ordinal."""
        async with get_session_context(self._session_factory) as session:
            document = await DocumentRepository(session).get_by_id(document_id)
        if document is None or document.active_generation is None:
            return []

        snapshot = self.snapshot_key(document_id, document.active_generation)
        chunks: List[StoredChunk] = []
        offset = None
        try:
            while True:
                records, offset = await self._client.scroll(
                    collection_name=self.collection_name,
                    scroll_filter=self._snapshot_filter(snapshot),
                    limit=_UPSERT_BATCH,
                    offset=offset,
                    with_payload=True,
                )
                chunks.extend(self._to_chunk(r.id, r.payload or {}) for r in records)
                if offset is None:
                    break
        except Exception as e:
            raise VectorStoreError(
                "Failed to list chunks", details={"document_id": document_id, "error": str(e)}
            ) from e
        return sorted(chunks, key=lambda c: c.ordinal)

    async def delete_document(self, document_id: str) -> None:
        """Remove every chunk of a document (all generations)."""
        async with get_session_context(self._session_factory) as session:
            await DocumentRepository(session).clear_index(document_id)
        await self._delete_where(
            Filter(must=[FieldCondition(key="document_id", match=MatchValue(value=document_id))])
        )
        logger.info(f"Chunks deleted: document_id={document_id}")

    # Internal helpers

    @staticmethod
    def _snapshot_filter(snapshot: str) -> Filter:
        return Filter(must=[FieldCondition(key="snapshot", match=MatchValue(value=snapshot))])

    @staticmethod
    def _payload(
        chunk: TextChunk,
        document_id: str,
        owner_id: str,
        generation: int,
        snapshot: str,
        indexed_at: float,
        embedding_model: Optional[str],
    ) -> Dict[str, Any]:
        return {
            "document_id": document_id,
            "owner_id": owner_id,
            "generation": generation,
            "snapshot": snapshot,
            "ordinal": chunk.ordinal,
            "text": chunk.text,
            "token_count": chunk.token_count,
            "offset_start": chunk.offset_start,
            "offset_end": chunk.offset_end,
            "indexed_at": indexed_at,
            "embedding_model": embedding_model,
        }

    @staticmethod
    def _to_chunk(point_id: Any, payload: Dict[str, Any]) -> StoredChunk:
        return StoredChunk(
            chunk_id=str(point_id),
            document_id=payload["document_id"],
            generation=int(payload["generation"]),
            ordinal=int(payload["ordinal"]),
            text=payload.get("text", ""),
            token_count=int(payload.get("token_count", 0)),
            offset_start=int(payload.get("offset_start", 0)),
            offset_end=int(payload.get("offset_end", 0)),
            indexed_at=float(payload.get("indexed_at", 0.0)),
        )

    async def _delete_where(self, points_filter: Filter) -> None:
        try:
            await self._client.delete(
                collection_name=self.collection_name,
                points_selector=FilterSelector(filter=points_filter),
                wait=True,
            )
        except Exception as e:
            raise VectorStoreError(
                "Failed to delete points",
                details={"collection": self.collection_name, "error": str(e)},
            ) from e

    async def _discard_snapshot(self, snapshot: str) -> None:
        """Best-effort removal of a generation that never became active."""
        try:
            await self._delete_where(self._snapshot_filter(snapshot))
        except VectorStoreError as e:
            logger.warning(f"Could not discard unpublished snapshot {snapshot}: {e.details}")

    async def _prune_generations(self, document_id: str, keep_from: int) -> None:
        """Delete generations older than ``keep_from``; failures only leave invisible points behind."""
        try:
            await self._delete_where(
                Filter(
                    must=[
                        FieldCondition(key="document_id", match=MatchValue(value=document_id)),
                        FieldCondition(key="generation", range=Range(lt=keep_from)),
                    ]
                )
            )
        except VectorStoreError as e:
            logger.warning(f"Could not prune old generations of {document_id}: {e.details}")

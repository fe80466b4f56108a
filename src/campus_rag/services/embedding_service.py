"""Embedding client (provider-agnostic)."""

import asyncio
from typing import Awaitable, Callable, List, Optional

from tenacity import AsyncRetrying, stop_after_attempt

from campus_rag.config import get_settings
from campus_rag.providers.base import EmbeddingProvider
from campus_rag.services.embedding_cache import QueryEmbeddingCache
from campus_rag.utils.errors import DimensionMismatchError, InvalidInput, ProviderError, RateLimited
from campus_rag.utils.logging import get_logger
from campus_rag.utils.retry import provider_wait, retry_provider_errors

logger = get_logger("embedding_service")
settings = get_settings()


class EmbeddingService:
    """
    Turn texts into vectors through a single embedding provider.

    The provider's dimension must equal the configured index dimension and is
    checked when the service is built. Batches are retried on
    ``ProviderUnavailable``/``RateLimited`` with jittered exponential backoff. For
    query embeddings a timeout is final (no retry), and results are served from
    ``query_cache`` when one is given.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        dimension: Optional[int] = None,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
        max_input_tokens: Optional[int] = None,
        token_counter: Optional[Callable[[str], int]] = None,
        backoff_initial: float = 1.0,
        backoff_max: float = 20.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        query_cache: Optional[QueryEmbeddingCache] = None,
    ):
        self.provider = provider
        self.query_cache = query_cache
        self.dimension = dimension or settings.embedding.embedding_dimension
        self.batch_size = max(1, batch_size or settings.embedding.embedding_batch_size)
        self.max_attempts = max_attempts or settings.embedding.embedding_max_attempts
        self.timeout = timeout or settings.embedding.embedding_timeout
        self.max_input_tokens = max_input_tokens or settings.embedding.embedding_max_input_tokens
        self._token_counter = token_counter
        self._backoff_initial = backoff_initial
        self._backoff_max = backoff_max
        self._sleep = sleep

        if provider.dimension != self.dimension:
            raise DimensionMismatchError(
                expected=self.dimension,
                actual=provider.dimension,
                message=(
                    f"Embedding provider {provider.name} produces {provider.dimension}-d vectors but the "
                    f"index is configured for {self.dimension}; re-index with a matching EMBEDDING_DIMENSION"
                ),
            )

    def _count_tokens(self, text: str) -> int:
        if self._token_counter is None:
            from campus_rag.services.chunking_service import get_chunking_service

            self._token_counter = get_chunking_service().count_tokens
        return self._token_counter(text)

    def _validate_inputs(self, texts: List[str]) -> None:
        for i, text in enumerate(texts):
            if not text or not text.strip():
                raise InvalidInput("Cannot embed empty text", details={"index": i})
            tokens = self._count_tokens(text)
            if tokens > self.max_input_tokens:
                raise InvalidInput(
                    "Text exceeds the embedding provider's input limit",
                    details={"index": i, "tokens": tokens, "max_tokens": self.max_input_tokens},
                )

    async def _embed_batch_with_retry(self, texts: List[str], retry_timeouts: bool) -> List[List[float]]:
        """Embed a batch with retry logic (rate limits, transient failures)."""
        async for attempt in AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_attempts),
            wait=provider_wait(self._backoff_initial, self._backoff_max),
            retry=retry_provider_errors(retry_timeouts=retry_timeouts),
            sleep=self._sleep,
        ):
            with attempt:
                try:
                    return await self.provider.embed_batch(texts, timeout=self.timeout)
                except RateLimited as e:
                    self.provider.descriptor.note_rate_limited(e.retry_after)
                    raise
        raise ProviderError("Embedding retries exhausted", provider=self.provider.name)

    def _check_vectors(self, vectors: List[List[float]], expected: int) -> None:
        if len(vectors) != expected:
            raise ProviderError(
                "Embedding response size mismatch",
                provider=self.provider.name,
                details={"expected": expected, "got": len(vectors)},
            )
        for vector in vectors:
            if len(vector) != self.dimension:
                raise DimensionMismatchError(expected=self.dimension, actual=len(vector))

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Embed texts in provider-sized batches.

        Args:
            texts: Texts to embed

        Returns:
            Vectors aligned with the input order

        Raises:
            InvalidInput: Empty or oversized text (raised before any provider call)
            ProviderUnavailable / RateLimited: Retries exhausted
        """
        if not texts:
            return []
        self._validate_inputs(texts)

        logger.info(
            f"Generating embeddings: provider={self.provider.name}, model={self.provider.model}, "
            f"texts={len(texts)}, batch_size={self.batch_size}"
        )

        out: List[List[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start : start + self.batch_size]
            vectors = await self._embed_batch_with_retry(batch, retry_timeouts=True)
            self._check_vectors(vectors, len(batch))
            out.extend(vectors)
        return out

    async def embed_query(self, text: str) -> List[float]:
        """Embed a single query; a timeout here is a hard ``ProviderUnavailable``."""
        self._validate_inputs([text])
        if self.query_cache is not None:
            cached = self.query_cache.get(self.provider.model, text)
            if cached is not None:
                return cached

        vectors = await self._embed_batch_with_retry([text], retry_timeouts=False)
        self._check_vectors(vectors, 1)
        if self.query_cache is not None:
            self.query_cache.put(self.provider.model, text, vectors[0])
        return vectors[0]

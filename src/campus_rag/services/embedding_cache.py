"""In-memory cache of query embeddings."""

import hashlib
import re
import time
from typing import Callable, Dict, List, Optional

from cachetools import TTLCache

from campus_rag.config import get_settings
from campus_rag.utils.logging import get_logger

logger = get_logger("embedding_cache")
settings = get_settings()

_WHITESPACE = re.compile(r"\s+")


def cache_key(model: str, text: str) -> str:
    """Key for ``text`` embedded by ``model``; case and spacing differences share an entry."""
    normalized = _WHITESPACE.sub(" ", text.strip().lower())
    return f"{model}:{hashlib.md5(normalized.encode('utf-8')).hexdigest()}"


class QueryEmbeddingCache:
    """
    Bounded TTL cache in front of query embedding calls.

    Entries expire after ``ttl_seconds``; once ``max_size`` entries are held the
    least recently used one is evicted. Hits and misses are counted for
    the readiness endpoint.
    """

    def __init__(
        self,
        max_size: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        config = settings.embedding
        self.max_size = max_size if max_size is not None else config.query_cache_size
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else config.query_cache_ttl_seconds
        self._entries: TTLCache = TTLCache(maxsize=max(1, self.max_size), ttl=self.ttl_seconds, timer=timer)
        self.hits = 0
        self.misses = 0

    def get(self, model: str, text: str) -> Optional[List[float]]:
        vector = self._entries.get(cache_key(model, text))
        if vector is None:
            self.misses += 1
            return None
        self.hits += 1
        return list(vector)

    def put(self, model: str, text: str, vector: List[float]) -> None:
        self._entries[cache_key(model, text)] = tuple(vector)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0
        logger.info("Query embedding cache cleared")

    def stats(self) -> Dict[str, float]:
        lookups = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "size": self._entries.currsize,
            "max_size": self.max_size,
            "hit_rate": round(self.hits / lookups, 4) if lookups else 0.0,
        }


def build_query_cache() -> Optional[QueryEmbeddingCache]:
    """Cache sized from settings, or None when QUERY_CACHE_SIZE is 0."""
    if settings.embedding.query_cache_size <= 0:
        logger.info("Query embedding cache disabled")
        return None
    return QueryEmbeddingCache()

"""Provider capability interfaces.

Every embedding or completion vendor is reached through one adapter that
implements one of the interfaces below and reports failures with the shared
error taxonomy (``ProviderUnavailable``, ``RateLimited``, ``InvalidInput``,
``ProviderRejected``). Callers depend only on these interfaces.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from campus_rag.models.completion import CompletionResult


class ProviderCapability(str, Enum):
    """What a provider can be used for."""

    EMBEDDING = "embedding"
    COMPLETION = "completion"
    BOTH = "both"


@dataclass
class ProviderDescriptor:
    """Static description of a provider plus its process-local backoff state."""

    name: str
    model: str
    capability: ProviderCapability
    priority: int = 0
    dimension: Optional[int] = None
    cooldown_until: float = 0.0

    def note_rate_limited(self, retry_after: Optional[float], default_cooldown: float = 1.0) -> None:
        """Remember that the provider asked us to slow down."""
        delay = retry_after if retry_after and retry_after > 0 else default_cooldown
        self.cooldown_until = max(self.cooldown_until, time.monotonic() + delay)

    @property
    def is_cooling_down(self) -> bool:
        return time.monotonic() < self.cooldown_until


class EmbeddingProvider(ABC):
    """Turns texts into fixed-dimension vectors."""

    descriptor: ProviderDescriptor

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def model(self) -> str:
        return self.descriptor.model

    @property
    def dimension(self) -> int:
        return int(self.descriptor.dimension or 0)

    @abstractmethod
    async def embed_batch(self, texts: List[str], timeout: float) -> List[List[float]]:
        """Embed one batch of texts, preserving input order."""


class CompletionProvider(ABC):
    """Generates a chat completion."""

    descriptor: ProviderDescriptor

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def model(self) -> str:
        return self.descriptor.model

    @abstractmethod
    async def complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> CompletionResult:
        """Run one completion call (no retries)."""


def parse_retry_after(headers) -> Optional[float]:
    """Read a ``Retry-After`` (seconds) hint from response headers, if any."""
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except (TypeError, ValueError):
        return None

"""Provider adapters (one per embedding/completion vendor)."""

from campus_rag.providers.base import (
    CompletionProvider,
    EmbeddingProvider,
    ProviderCapability,
    ProviderDescriptor,
)

__all__ = [
    "CompletionProvider",
    "EmbeddingProvider",
    "ProviderCapability",
    "ProviderDescriptor",
]

"""Build provider adapters from configuration."""

from typing import List, Optional

from campus_rag.config import (
    CompletionSettings,
    EmbeddingProviderKind,
    EmbeddingSettings,
    get_settings,
)
from campus_rag.providers.base import (
    CompletionProvider,
    EmbeddingProvider,
    ProviderCapability,
    ProviderDescriptor,
)
from campus_rag.providers.litellm_provider import (
    LiteLLMCompletionProvider,
    LiteLLMEmbeddingProvider,
    build_completion_descriptors,
)
from campus_rag.providers.openai_provider import OpenAIEmbeddingProvider
from campus_rag.utils.errors import ConfigurationError
from campus_rag.utils.logging import get_logger

logger = get_logger("provider_factory")


def build_embedding_provider(config: Optional[EmbeddingSettings] = None) -> EmbeddingProvider:
    """Create the adapter for the configured embedding provider."""
    config = config or get_settings().embedding
    kind = config.embedding_provider

    if kind == EmbeddingProviderKind.OPENAI:
        provider: EmbeddingProvider = OpenAIEmbeddingProvider.from_openai(
            api_key=config.openai_api_key,
            model=config.embedding_model,
            dimension=config.embedding_dimension,
            base_url=config.openai_base_url,
            timeout=config.embedding_timeout,
        )
    elif kind == EmbeddingProviderKind.AZURE:
        if not config.embedding_deployment_name:
            raise ConfigurationError("EMBEDDING_DEPLOYMENT_NAME is required when EMBEDDING_PROVIDER=azure")
        provider = OpenAIEmbeddingProvider.from_azure(
            api_key=config.azure_openai_api_key,
            endpoint=config.azure_openai_endpoint,
            api_version=config.azure_openai_api_version,
            deployment=config.embedding_deployment_name,
            dimension=config.embedding_dimension,
            timeout=config.embedding_timeout,
        )
    elif kind == EmbeddingProviderKind.LITELLM:
        provider = LiteLLMEmbeddingProvider(
            ProviderDescriptor(
                name=config.embedding_model.split("/", 1)[0],
                model=config.embedding_model,
                capability=ProviderCapability.EMBEDDING,
                dimension=config.embedding_dimension,
            ),
            api_key=config.embedding_api_key,
            api_base=config.embedding_api_base,
        )
    else:
        raise ConfigurationError(f"Unsupported embedding provider: {kind}")

    logger.info(
        f"Embedding provider configured: provider={provider.name}, model={provider.model}, "
        f"dimension={provider.dimension}"
    )
    return provider


def build_completion_providers(config: Optional[CompletionSettings] = None) -> List[CompletionProvider]:
    """Create one adapter per configured completion model, in priority order."""
    config = config or get_settings().completion
    models = config.providers
    if not models:
        raise ConfigurationError("COMPLETION_PROVIDERS is empty")

    providers: List[CompletionProvider] = []
    for descriptor in build_completion_descriptors(models):
        api_key = config.api_key_for(descriptor.model)
        if not api_key:
            logger.warning(f"No API key configured for completion provider {descriptor.name}")
        providers.append(
            LiteLLMCompletionProvider(
                descriptor,
                api_key=api_key,
                api_base=config.api_base_for(descriptor.model),
            )
        )

    logger.info(f"Completion providers configured: {[p.name for p in providers]}")
    return providers

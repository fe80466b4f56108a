"""OpenAI / Azure OpenAI embedding adapter."""

import asyncio
from typing import List, Optional, Union

import openai
from openai import AsyncAzureOpenAI, AsyncOpenAI

from campus_rag.providers.base import (
    EmbeddingProvider,
    ProviderCapability,
    ProviderDescriptor,
    parse_retry_after,
)
from campus_rag.utils.errors import (
    InvalidInput,
    ProviderAuthenticationError,
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
    RateLimited,
)
from campus_rag.utils.logging import get_logger

logger = get_logger("openai_provider")


def map_openai_error(error: Exception, provider: str) -> Union[ProviderError, InvalidInput]:
    """Translate an OpenAI SDK exception into the provider error taxonomy."""
    if isinstance(error, openai.RateLimitError):
        response = getattr(error, "response", None)
        return RateLimited(
            f"Rate limited by {provider}",
            provider=provider,
            retry_after=parse_retry_after(getattr(response, "headers", None)),
        )
    if isinstance(error, (openai.APITimeoutError, asyncio.TimeoutError)):
        return ProviderUnavailable(f"{provider} timed out", provider=provider, timeout=True)
    if isinstance(error, openai.APIConnectionError):
        return ProviderUnavailable(f"Could not reach {provider}: {error}", provider=provider)
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ProviderAuthenticationError(f"{provider} rejected the credentials", provider=provider)
    if isinstance(error, (openai.BadRequestError, openai.UnprocessableEntityError)):
        return InvalidInput(f"{provider} rejected the input: {error}", details={"provider": provider})
    if isinstance(error, openai.APIStatusError):
        if error.status_code >= 500:
            return ProviderUnavailable(
                f"{provider} returned {error.status_code}",
                provider=provider,
                details={"status_code": error.status_code},
            )
        return ProviderRejected(
            f"{provider} returned {error.status_code}",
            provider=provider,
            details={"status_code": error.status_code},
        )
    return ProviderUnavailable(f"{provider} call failed: {error}", provider=provider)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    Embeddings through the OpenAI SDK.

    Works against OpenAI directly or an Azure OpenAI deployment, depending on
    which client is passed in (see ``from_openai`` / ``from_azure``).
    """

    def __init__(self, client: AsyncOpenAI, descriptor: ProviderDescriptor):
        self._client = client
        self.descriptor = descriptor

    @classmethod
    def from_openai(
        cls,
        api_key: Optional[str],
        model: str,
        dimension: int,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ) -> "OpenAIEmbeddingProvider":
        client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)
        return cls(client, _descriptor("openai", model, dimension))

    @classmethod
    def from_azure(
        cls,
        api_key: Optional[str],
        endpoint: Optional[str],
        api_version: str,
        deployment: str,
        dimension: int,
        timeout: float = 30.0,
    ) -> "OpenAIEmbeddingProvider":
        client = AsyncAzureOpenAI(
            api_key=api_key,
            azure_endpoint=endpoint,
            api_version=api_version,
            timeout=timeout,
            max_retries=0,
        )
        return cls(client, _descriptor("azure", deployment, dimension))

    async def embed_batch(self, texts: List[str], timeout: float) -> List[List[float]]:
        try:
            resp = await asyncio.wait_for(
                self._client.embeddings.create(model=self.model, input=texts),
                timeout=timeout,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            mapped = map_openai_error(e, self.name)
            logger.warning(f"Embedding call failed: provider={self.name}, error={mapped.code}")
            raise mapped from e

        # Items are matched to inputs by index
        items = sorted(resp.data, key=lambda d: d.index)
        return [list(d.embedding) for d in items]


def _descriptor(name: str, model: str, dimension: int) -> ProviderDescriptor:
    return ProviderDescriptor(
        name=name,
        model=model,
        capability=ProviderCapability.EMBEDDING,
        dimension=dimension,
    )

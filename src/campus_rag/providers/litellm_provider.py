"""LiteLLM adapters for completion and embedding vendors.

One ``LiteLLMCompletionProvider`` is built per configured model id
(``groq/...``, ``gemini/...``, ``deepseek/...``, ``openai/...``). Credentials are
passed explicitly on every call instead of through process environment.
"""

import asyncio
from typing import Any, Dict, List, Optional

import litellm
import openai
from litellm import acompletion, aembedding

from campus_rag.models.completion import CompletionResult
from campus_rag.providers.base import (
    CompletionProvider,
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

logger = get_logger("litellm_provider")


def map_litellm_error(error: Exception, provider: str) -> ProviderError:
    """Translate a LiteLLM exception into the provider error taxonomy."""
    if isinstance(error, litellm.RateLimitError):
        response = getattr(error, "response", None)
        return RateLimited(
            f"Rate limited by {provider}",
            provider=provider,
            retry_after=parse_retry_after(getattr(response, "headers", None)),
        )
    if isinstance(error, (litellm.Timeout, asyncio.TimeoutError)):
        return ProviderUnavailable(f"{provider} timed out", provider=provider, timeout=True)
    if isinstance(
        error,
        (litellm.APIConnectionError, litellm.ServiceUnavailableError, litellm.InternalServerError),
    ):
        return ProviderUnavailable(f"{provider} unavailable: {error}", provider=provider)
    if isinstance(error, (litellm.AuthenticationError, openai.PermissionDeniedError)):
        return ProviderAuthenticationError(f"{provider} rejected the credentials", provider=provider)
    if isinstance(error, (litellm.BadRequestError, litellm.NotFoundError)):
        return ProviderRejected(f"{provider} rejected the request: {error}", provider=provider)

    status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int) and status_code < 500:
        return ProviderRejected(
            f"{provider} returned {status_code}",
            provider=provider,
            details={"status_code": status_code},
        )
    return ProviderUnavailable(f"{provider} call failed: {error}", provider=provider)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a LiteLLM response object or a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class LiteLLMCompletionProvider(CompletionProvider):
    """Chat completions through ``litellm.acompletion``."""

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
    ):
        self.descriptor = descriptor
        self._api_key = api_key
        self._api_base = api_base

    async def complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> CompletionResult:
        params: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "timeout": timeout,
            "num_retries": 0,
        }
        if self._api_key:
            params["api_key"] = self._api_key
        if self._api_base:
            params["api_base"] = self._api_base

        try:
            response = await asyncio.wait_for(acompletion(**params), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            mapped = map_litellm_error(e, self.name)
            logger.warning(
                f"Completion call failed: provider={self.name}, model={self.model}, error={mapped.code}"
            )
            raise mapped from e

        choices = _field(response, "choices") or []
        if not choices:
            raise ProviderUnavailable(f"{self.name} returned no choices", provider=self.name)
        message = _field(choices[0], "message")
        text = _field(message, "content") or ""
        if not text.strip():
            raise ProviderUnavailable(f"{self.name} returned an empty answer", provider=self.name)

        usage = _field(response, "usage")
        tokens_used = int(_field(usage, "total_tokens", 0) or 0) if usage is not None else 0
        return CompletionResult(text=text, model=self.model, tokens_used=tokens_used)


class LiteLLMEmbeddingProvider(EmbeddingProvider):
    """Embeddings through ``litellm.aembedding`` (gemini, mistral, voyage...)."""

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        api_key: Optional[str] = None,
        api_base: Optional[str] = None,
    ):
        self.descriptor = descriptor
        self._api_key = api_key
        self._api_base = api_base

    async def embed_batch(self, texts: List[str], timeout: float) -> List[List[float]]:
        params: Dict[str, Any] = {"model": self.model, "input": texts, "timeout": timeout}
        if self._api_key:
            params["api_key"] = self._api_key
        if self._api_base:
            params["api_base"] = self._api_base

        try:
            response = await asyncio.wait_for(aembedding(**params), timeout=timeout)
        except asyncio.CancelledError:
            raise
        except litellm.BadRequestError as e:
            raise InvalidInput(
                f"{self.name} rejected the input: {e}", details={"provider": self.name}
            ) from e
        except Exception as e:
            raise map_litellm_error(e, self.name) from e

        items = sorted(_field(response, "data") or [], key=lambda d: _field(d, "index", 0))
        return [list(_field(d, "embedding")) for d in items]


def provider_name_for(model: str) -> str:
    """Vendor part of a LiteLLM model id (``groq/llama-3.3`` -> ``groq``)."""
    return model.split("/", 1)[0] if "/" in model else "openai"


def build_completion_descriptors(models: List[str]) -> List[ProviderDescriptor]:
    """Descriptors in priority order; vendor names are used unless two models share a vendor."""
    vendors = [provider_name_for(m) for m in models]
    descriptors = []
    for priority, (model, vendor) in enumerate(zip(models, vendors)):
        name = vendor if vendors.count(vendor) == 1 else model
        descriptors.append(
            ProviderDescriptor(
                name=name,
                model=model,
                capability=ProviderCapability.COMPLETION,
                priority=priority,
            )
        )
    return descriptors

"""Completion orchestrator with ordered provider failover.

Each call walks the configured providers in preference order. A provider is
retried on ``ProviderUnavailable``/``RateLimited`` (bounded attempts, jittered
exponential backoff); a non-retryable failure or exhausted retries move on to
the next provider. When every provider has failed the call raises
``NoProviderAvailable``; there is no canned fallback answer.
"""

import asyncio
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from tenacity import AsyncRetrying, stop_after_attempt

from campus_rag.config import get_settings
from campus_rag.models.chunk import ContextBundle
from campus_rag.models.completion import Answer, AnswerDepth, AnswerStyle, CompletionResult
from campus_rag.providers.base import CompletionProvider
from campus_rag.services.prompt_builder import PromptBuilder
from campus_rag.utils.errors import (
    ConfigurationError,
    NoProviderAvailable,
    ProviderError,
    ProviderUnavailable,
    RateLimited,
)
from campus_rag.utils.logging import get_logger
from campus_rag.utils.retry import provider_wait, retry_provider_errors

logger = get_logger("completion_service")
settings = get_settings()

# [S1] or [S1, S3]
_MARKER_GROUP = re.compile(r"\[\s*(S\d+(?:\s*,\s*S\d+)*)\s*\]")
_MARKER_NUMBER = re.compile(r"S(\d+)")


def extract_citations(text: str, bundle: ContextBundle) -> List[str]:
    """
    Map ``[S<n>]`` markers in an answer back to chunk ids.

    Out-of-range numbers are ignored and repeats keep their first position. An
    answer without any valid marker cites every chunk in the context.
    """
    sources = [scored.chunk.chunk_id for scored in bundle.chunks]
    cited: List[str] = []
    for group in _MARKER_GROUP.findall(text or ""):
        for number in _MARKER_NUMBER.findall(group):
            index = int(number) - 1
            if 0 <= index < len(sources) and sources[index] not in cited:
                cited.append(sources[index])
    return cited or sources


class CompletionOrchestrator:
    """Generate grounded answers through an ordered list of completion providers."""

    def __init__(
        self,
        providers: Sequence[CompletionProvider],
        max_attempts: Optional[int] = None,
        timeout: Optional[float] = None,
        backoff_initial: Optional[float] = None,
        backoff_max: Optional[float] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not providers:
            raise ConfigurationError("At least one completion provider must be configured")
        config = settings.completion
        self.providers = list(providers)
        self.max_attempts = max_attempts or config.completion_max_attempts
        self.timeout = timeout or config.completion_timeout
        self.backoff_initial = (
            backoff_initial if backoff_initial is not None else config.completion_backoff_initial
        )
        self.backoff_max = backoff_max if backoff_max is not None else config.completion_backoff_max
        self.max_tokens = max_tokens or config.completion_max_tokens
        self.temperature = temperature if temperature is not None else config.completion_temperature
        self.prompt_builder = prompt_builder or PromptBuilder()
        self._sleep = sleep

    def order_providers(
        self, preference: Optional[Sequence[str]] = None
    ) -> List[CompletionProvider]:
        """
        Providers in the order they will be tried.

        Names listed in ``preference`` come first, in that order, then the rest in
        configured priority. Providers cooling down after a rate limit move behind
        the others but are still tried.
        """
        ordered = sorted(self.providers, key=lambda p: p.descriptor.priority)
        if preference:
            rank = {name: i for i, name in enumerate(preference)}
            ordered.sort(key=lambda p: rank.get(p.name, len(rank)))
        return [p for p in ordered if not p.descriptor.is_cooling_down] + [
            p for p in ordered if p.descriptor.is_cooling_down
        ]

    async def _attempt(
        self,
        provider: CompletionProvider,
        messages: List[Dict[str, str]],
        max_tokens: int,
        temperature: float,
    ) -> CompletionResult:
        try:
            return await asyncio.wait_for(
                provider.complete(
                    messages,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    timeout=self.timeout,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(
                f"{provider.name} timed out after {self.timeout}s", provider=provider.name, timeout=True
            ) from e
        except RateLimited as e:
            provider.descriptor.note_rate_limited(e.retry_after)
            raise

    async def _call_with_retry(
        self,
        provider: CompletionProvider,
        messages: List[Dict[str, str]],
        max_tokens: int,
        temperature: float,
    ) -> CompletionResult:
        """Call one provider, retrying transient failures."""
        async for attempt in AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_attempts),
            wait=provider_wait(self.backoff_initial, self.backoff_max),
            retry=retry_provider_errors(retry_timeouts=True),
            sleep=self._sleep,
        ):
            with attempt:
                return await self._attempt(provider, messages, max_tokens, temperature)
        raise ProviderUnavailable("Completion retries exhausted", provider=provider.name)

    async def generate(
        self,
        messages: List[Dict[str, str]],
        provider_preference: Optional[Sequence[str]] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Tuple[CompletionProvider, CompletionResult]:
        """
        Run ``messages`` through the providers until one succeeds.

        Returns:
            The provider that answered and its result

        Raises:
            NoProviderAvailable: Every provider failed (details list each failure)
        """
        max_tokens = max_tokens or self.max_tokens
        temperature = temperature if temperature is not None else self.temperature
        failures: List[Dict[str, Any]] = []

        for provider in self.order_providers(provider_preference):
            try:
                result = await self._call_with_retry(provider, messages, max_tokens, temperature)
            except ProviderError as e:
                failures.append(
                    {"provider": provider.name, "model": provider.model, "code": e.code, "message": e.message}
                )
                logger.warning(
                    f"Completion provider failed, trying next: provider={provider.name}, "
                    f"code={e.code}, retryable={e.retryable}"
                )
                continue

            if failures:
                logger.info(f"Completion served after failover: provider={provider.name}, failovers={len(failures)}")
            return provider, result

        logger.error(f"All completion providers failed: {[f['provider'] for f in failures]}")
        raise NoProviderAvailable(failures=failures)

    async def answer(
        self,
        question: str,
        bundle: ContextBundle,
        provider_preference: Optional[Sequence[str]] = None,
        style: AnswerStyle = AnswerStyle.BALANCED,
        depth: AnswerDepth = AnswerDepth.INTERMEDIATE,
    ) -> Answer:
        """
        Answer ``question`` from ``bundle``.

        Raises:
            NoProviderAvailable: Every provider failed (details list each failure)
        """
        messages = self.prompt_builder.build_messages(question, bundle, style=style, depth=depth)
        provider, result = await self.generate(messages, provider_preference)

        cited = extract_citations(result.text, bundle)
        logger.info(
            f"Answer generated: provider={provider.name}, model={result.model}, "
            f"tokens={result.tokens_used}, cited={len(cited)}/{len(bundle.chunks)}"
        )
        return Answer(
            text=result.text,
            cited_chunk_ids=cited,
            provider_used=provider.name,
            model=result.model,
            tokens_used=result.tokens_used,
        )

"""Retry policy shared by the embedding client and the completion orchestrator."""

from typing import Callable

from tenacity import RetryCallState, retry_if_exception, wait_exponential_jitter

from campus_rag.utils.errors import ProviderUnavailable, RateLimited


def is_retryable(error: BaseException, retry_timeouts: bool = True) -> bool:
    """Only ``ProviderUnavailable`` and ``RateLimited`` are ever retried."""
    if isinstance(error, RateLimited):
        return True
    if isinstance(error, ProviderUnavailable):
        return retry_timeouts or not error.timeout
    return False


def retry_provider_errors(retry_timeouts: bool = True):
    """tenacity ``retry=`` strategy for provider calls."""
    return retry_if_exception(lambda e: is_retryable(e, retry_timeouts=retry_timeouts))


def provider_wait(initial: float, maximum: float) -> Callable[[RetryCallState], float]:
    """
    Exponential backoff with jitter that honours ``RateLimited.retry_after``.

    A retry-after hint replaces the computed delay but is still capped at ``maximum``.
    """
    backoff = wait_exponential_jitter(initial=initial, max=maximum, jitter=initial)

    def _wait(retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        if isinstance(error, RateLimited) and error.retry_after is not None:
            return min(error.retry_after, maximum)
        return backoff(retry_state)

    return _wait

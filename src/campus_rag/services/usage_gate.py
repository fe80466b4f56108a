"""Usage gate: quota checks and usage recording against the billing service."""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from campus_rag.config import get_settings
from campus_rag.models.usage import QuotaDecision, UsageOperation
from campus_rag.utils.errors import ExternalServiceError, QuotaExceeded
from campus_rag.utils.logging import get_logger

logger = get_logger("usage_gate")
settings = get_settings()


class UsageGate(ABC):
    """Cost control in front of every billable operation.

    ``check_quota`` runs before any provider call; ``record_usage`` runs only
    after the operation succeeded.
    """

    @abstractmethod
    async def check_quota(self, owner_id: str, operation: UsageOperation) -> QuotaDecision:
        """Ask whether ``owner_id`` may perform ``operation`` now."""

    @abstractmethod
    async def record_usage(self, owner_id: str, operation: UsageOperation, amount: int = 1) -> None:
        """Report a completed operation."""

    async def ensure_allowed(self, owner_id: str, operation: UsageOperation) -> QuotaDecision:
        """
        Check the quota and raise on denial.

        Raises:
            QuotaExceeded: If the plan limit is reached
        """
        decision = await self.check_quota(owner_id, operation)
        if not decision.allowed:
            logger.info(
                f"Quota denied: owner_id={owner_id}, operation={operation.value}, "
                f"current={decision.current}, limit={decision.limit}"
            )
            raise QuotaExceeded(
                decision.reason or "Usage limit reached for this plan",
                operation=operation.value,
                details={"current": decision.current, "limit": decision.limit},
            )
        return decision


class AllowAllUsageGate(UsageGate):
    """Gate used when no billing service is configured (local development)."""

    async def check_quota(self, owner_id: str, operation: UsageOperation) -> QuotaDecision:
        return QuotaDecision(allowed=True)

    async def record_usage(self, owner_id: str, operation: UsageOperation, amount: int = 1) -> None:
        logger.debug(f"Usage not recorded (no billing service): {owner_id} {operation.value} x{amount}")


class HttpUsageGate(UsageGate):
    """
    HTTP client for the billing service's internal usage endpoints.

    Handles:
    - Checking plan limits (POST /api/v1/usage/check)
    - Recording usage (POST /api/v1/usage/record)

    Transport failures fail closed: the operation is refused with
    ``ExternalServiceError`` rather than allowed unmetered.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the billing client."""
        self.base_url = (base_url or settings.usage.url or "").rstrip("/")
        self.timeout = timeout or settings.usage.timeout
        self._transport = transport
        self._headers: Dict[str, str] = {}
        key = api_key or settings.usage.api_key
        if key:
            self._headers["X-Internal-API-Key"] = key

    async def _post(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                return await client.post(url, json=payload, headers=self._headers)
        except httpx.TimeoutException as e:
            logger.error(f"Timeout calling billing service: {path} - {e}")
            raise ExternalServiceError(
                "billing", f"Timeout calling billing service: {path}", status_code=504
            ) from e
        except httpx.RequestError as e:
            logger.error(f"Request error calling billing service: {path} - {e}")
            raise ExternalServiceError("billing", f"Billing service unreachable: {path}") from e

    async def check_quota(self, owner_id: str, operation: UsageOperation) -> QuotaDecision:
        """
        Check the owner's plan limit for an operation.

        Args:
            owner_id: User whose plan is checked
            operation: Billable operation

        Returns:
            QuotaDecision (``limit == -1`` means unlimited)

        Raises:
            ExternalServiceError: If the billing service cannot answer
        """
        response = await self._post(
            "/api/v1/usage/check", {"user_id": owner_id, "operation": operation.value}
        )
        if response.status_code == 403:
            body = self._json(response)
            return QuotaDecision(
                allowed=False,
                reason=body.get("reason") or body.get("detail") or "Usage limit reached",
                current=int(body.get("current") or 0),
                limit=self._limit(body.get("limit")),
                remaining=0,
            )
        if response.status_code != 200:
            logger.error(
                f"Usage check failed: owner_id={owner_id}, status={response.status_code}, "
                f"response={response.text}"
            )
            raise ExternalServiceError(
                "billing", f"Usage check failed: {response.status_code}"
            )

        body = self._json(response)
        limit = self._limit(body.get("limit"))
        current = int(body.get("current") or body.get("current_usage") or 0)
        allowed = body.get("allowed", body.get("within_limit"))
        if allowed is None:
            allowed = limit == -1 or current < limit
        remaining = body.get("remaining")
        return QuotaDecision(
            allowed=bool(allowed),
            reason=body.get("reason"),
            current=current,
            limit=limit,
            remaining=-1 if limit == -1 else int(remaining if remaining is not None else max(0, limit - current)),
        )

    async def record_usage(self, owner_id: str, operation: UsageOperation, amount: int = 1) -> None:
        """Record a completed operation."""
        response = await self._post(
            "/api/v1/usage/record",
            {"user_id": owner_id, "operation": operation.value, "amount": amount},
        )
        if response.status_code not in (200, 201, 204):
            logger.error(
                f"Failed to record usage: owner_id={owner_id}, operation={operation.value}, "
                f"status={response.status_code}"
            )
            raise ExternalServiceError("billing", f"Usage record failed: {response.status_code}")
        logger.info(f"Usage recorded: owner_id={owner_id}, operation={operation.value}, amount={amount}")

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    @staticmethod
    def _limit(value: Any) -> int:
        if value is None:
            return -1
        return int(value)


def build_usage_gate() -> UsageGate:
    """HTTP gate when a billing URL is configured, allow-all otherwise."""
    if settings.usage.is_configured:
        return HttpUsageGate()
    logger.warning("USAGE_URL not configured; quota checks are disabled")
    return AllowAllUsageGate()

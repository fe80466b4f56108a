"""Custom exception classes for the Campus RAG service."""

from typing import Any, Dict, List, Optional


class RagException(Exception):
    """Base exception for all Campus RAG errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON response."""
        return {
            "error": {
                "message": self.message,
                "code": self.code,
                "status_code": self.status_code,
                "details": self.details,
            }
        }


class ProviderError(RagException):
    """Base class for failures reported by an embedding or completion provider."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: int = 502,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if provider:
            error_details["provider"] = provider
        self.provider = provider
        super().__init__(message=message, status_code=status_code, code=code, details=error_details)


class ProviderUnavailable(ProviderError):
    """Network error, timeout or 5xx from a provider. Retryable."""

    retryable = True

    def __init__(
        self,
        message: str = "Provider unavailable",
        provider: Optional[str] = None,
        timeout: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.timeout = timeout
        error_details = details or {}
        if timeout:
            error_details["timeout"] = True
        super().__init__(
            message=message,
            provider=provider,
            status_code=502,
            code="PROVIDER_UNAVAILABLE",
            details=error_details,
        )


class RateLimited(ProviderError):
    """Provider answered 429 or reported an exhausted quota. Retryable after backoff."""

    retryable = True

    def __init__(
        self,
        message: str = "Provider rate limit reached",
        provider: Optional[str] = None,
        retry_after: Optional[float] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.retry_after = retry_after
        error_details = details or {}
        if retry_after is not None:
            error_details["retry_after"] = retry_after
        super().__init__(
            message=message,
            provider=provider,
            status_code=429,
            code="RATE_LIMITED",
            details=error_details,
        )


class ProviderRejected(ProviderError):
    """Provider refused the request (malformed request, unknown model). Not retryable."""

    def __init__(
        self,
        message: str = "Provider rejected the request",
        provider: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            provider=provider,
            status_code=502,
            code="PROVIDER_REJECTED",
            details=details,
        )


class ProviderAuthenticationError(ProviderRejected):
    """Provider credentials are missing or invalid."""

    def __init__(
        self,
        message: str = "Provider authentication failed",
        provider: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, provider=provider, details=details)
        self.code = "PROVIDER_AUTHENTICATION_ERROR"


class InvalidInput(RagException):
    """Oversized or malformed text. Not retryable, surfaced to the caller."""

    def __init__(
        self,
        message: str = "Invalid input",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=422,
            code="INVALID_INPUT",
            details=details,
        )


class ChunkingError(InvalidInput):
    """Exception raised for text chunking errors."""

    def __init__(
        self,
        message: str = "Text chunking failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, details=details)
        self.code = "CHUNKING_ERROR"


class NoProviderAvailable(RagException):
    """Every configured completion provider failed for this call."""

    def __init__(
        self,
        message: str = "No completion provider is available",
        failures: Optional[List[Dict[str, Any]]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        error_details["failures"] = failures or []
        super().__init__(
            message=message,
            status_code=503,
            code="NO_PROVIDER_AVAILABLE",
            details=error_details,
        )


class AlreadyIndexing(RagException):
    """An indexing run for the document is already in flight."""

    def __init__(self, document_id: str, details: Optional[Dict[str, Any]] = None):
        error_details = details or {}
        error_details["document_id"] = document_id
        super().__init__(
            message=f"Document {document_id} is already being indexed",
            status_code=409,
            code="ALREADY_INDEXING",
            details=error_details,
        )


class QuotaExceeded(RagException):
    """The usage gate denied the operation."""

    def __init__(
        self,
        message: str = "Usage limit reached for this plan",
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if operation:
            error_details["operation"] = operation
        super().__init__(
            message=message,
            status_code=403,
            code="QUOTA_EXCEEDED",
            details=error_details,
        )


class DimensionMismatchError(RagException):
    """Embedding dimension does not match the vector index."""

    def __init__(
        self,
        expected: int,
        actual: int,
        message: str = "Embedding dimension mismatch; a full re-index is required",
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        error_details.update({"expected_dimension": expected, "actual_dimension": actual})
        super().__init__(
            message=message,
            status_code=500,
            code="DIMENSION_MISMATCH",
            details=error_details,
        )


class VectorStoreError(RagException):
    """Exception raised for Qdrant operation errors."""

    def __init__(
        self,
        message: str = "Vector store operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=502,
            code="VECTOR_STORE_ERROR",
            details=details,
        )


class DatabaseError(RagException):
    """Exception raised for database errors."""

    def __init__(
        self,
        message: str = "Database operation failed",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=500,
            code="DATABASE_ERROR",
            details=details,
        )


class NotFoundError(RagException):
    """Exception raised when a resource is not found."""

    def __init__(
        self,
        resource: str = "Resource",
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        message = f"{resource} not found"
        if resource_id:
            message += f" with id: {resource_id}"
        error_details = details or {}
        error_details["resource"] = resource
        if resource_id:
            error_details["resource_id"] = resource_id
        super().__init__(
            message=message,
            status_code=404,
            code="NOT_FOUND",
            details=error_details,
        )


class ExternalServiceError(RagException):
    """Exception raised when external service calls fail."""

    def __init__(
        self,
        service: str,
        message: Optional[str] = None,
        status_code: int = 502,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_message = message or f"External service '{service}' unavailable"
        error_details = details or {}
        error_details["service"] = service
        super().__init__(
            message=error_message,
            status_code=status_code,
            code="EXTERNAL_SERVICE_ERROR",
            details=error_details,
        )


class ConfigurationError(RagException):
    """Exception raised when the service is misconfigured."""

    def __init__(
        self,
        message: str = "Service misconfigured",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            status_code=500,
            code="CONFIGURATION_ERROR",
            details=details,
        )

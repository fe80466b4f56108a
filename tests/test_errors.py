"""Tests for the error taxonomy."""

from campus_rag.utils.errors import (
    AlreadyIndexing,
    DimensionMismatchError,
    ExternalServiceError,
    NoProviderAvailable,
    NotFoundError,
    ProviderUnavailable,
    QuotaExceeded,
    RagException,
    RateLimited,
)
from campus_rag.utils.retry import is_retryable


class TestRagException:
    """Base exception."""

    def test_to_dict(self):
        exc = RagException("Something broke", status_code=418, code="TEAPOT", details={"a": 1})
        assert exc.to_dict() == {
            "error": {
                "message": "Something broke",
                "code": "TEAPOT",
                "status_code": 418,
                "details": {"a": 1},
            }
        }

    def test_default_code_is_class_name(self):
        assert RagException("x").code == "RagException"


class TestStatusCodes:
    """HTTP status of each error kind."""

    def test_status_codes(self):
        assert QuotaExceeded().status_code == 403
        assert NoProviderAvailable().status_code == 503
        assert AlreadyIndexing("doc-1").status_code == 409
        assert NotFoundError("Document", "doc-1").status_code == 404
        assert ExternalServiceError("billing").status_code == 502

    def test_not_found_message(self):
        exc = NotFoundError("Document", "doc-1")
        assert exc.message == "Document not found with id: doc-1"
        assert exc.details == {"resource": "Document", "resource_id": "doc-1"}

    def test_dimension_mismatch_details(self):
        exc = DimensionMismatchError(expected=1536, actual=768)
        assert exc.details == {"expected_dimension": 1536, "actual_dimension": 768}


class TestRetryable:
    """Only transient provider failures are retried."""

    def test_retryable_kinds(self):
        assert is_retryable(RateLimited(provider="p"))
        assert is_retryable(ProviderUnavailable(provider="p"))
        assert not is_retryable(NotFoundError())
        assert not is_retryable(ValueError("x"))

    def test_timeouts_can_be_excluded(self):
        timeout = ProviderUnavailable(provider="p", timeout=True)
        assert is_retryable(timeout, retry_timeouts=True)
        assert not is_retryable(timeout, retry_timeouts=False)
        assert timeout.details == {"timeout": True, "provider": "p"}

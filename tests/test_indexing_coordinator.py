"""Tests for the indexing coordinator and worker pool."""

import pytest

from campus_rag.database.models import IndexState
from campus_rag.models.usage import UsageOperation
from campus_rag.services.chunking_service import ChunkingService
from campus_rag.services.embedding_service import EmbeddingService
from campus_rag.utils.errors import (
    AlreadyIndexing,
    InvalidInput,
    NotFoundError,
    ProviderRejected,
    QuotaExceeded,
    RagException,
)
from campus_rag.workers.indexing_coordinator import IndexingCoordinator
from campus_rag.workers.indexing_pool import IndexingWorkerPool

from .conftest import DIMENSION, RecordingUsageGate, no_sleep, word_count_tokens

CALCULUS_NOTES = "The derivative measures how a function changes as its input changes. " * 120


@pytest.fixture(scope="module")
def chunking_service():
    return ChunkingService(encoding_name="cl100k_base")


@pytest.fixture
def usage_gate():
    return RecordingUsageGate()


@pytest.fixture
def coordinator(chunking_service, embedding_provider, vector_store, usage_gate, session_factory):
    embedding_service = EmbeddingService(
        embedding_provider,
        dimension=DIMENSION,
        token_counter=word_count_tokens,
        sleep=no_sleep,
    )
    return IndexingCoordinator(
        chunking_service,
        embedding_service,
        vector_store,
        usage_gate,
        session_factory=session_factory,
        lease_seconds=60,
        min_content_chars=20,
    )


class TestIndexDocument:
    """Full indexing runs."""

    @pytest.mark.asyncio
    async def test_success_marks_indexed_and_records_usage(
        self, coordinator, vector_store, usage_gate, add_document, get_document
    ):
        doc = await add_document(CALCULUS_NOTES)

        count = await coordinator.index_document(doc)

        document = await get_document(doc)
        assert document.index_state == IndexState.INDEXED.value
        assert document.chunk_count == count
        assert document.indexed_at is not None
        assert document.lease_expires_at is None
        assert count > 1
        assert len(await vector_store.list_chunks(doc)) == count
        assert usage_gate.recorded == [("owner-1", UsageOperation.DOCUMENT_INDEXED, 1)]

    @pytest.mark.asyncio
    async def test_reindexing_same_text_gives_same_boundaries(self, coordinator, vector_store, add_document):
        doc = await add_document(CALCULUS_NOTES)

        await coordinator.index_document(doc)
        first = [(c.ordinal, c.offset_start, c.offset_end, c.text) for c in await vector_store.list_chunks(doc)]
        await coordinator.index_document(doc)
        second = await vector_store.list_chunks(doc)

        assert [(c.ordinal, c.offset_start, c.offset_end, c.text) for c in second] == first
        assert {c.generation for c in second} == {2}

    @pytest.mark.asyncio
    async def test_short_text_marks_failed(self, coordinator, usage_gate, add_document, get_document):
        doc = await add_document("Too short.")

        with pytest.raises(InvalidInput):
            await coordinator.index_document(doc)

        document = await get_document(doc)
        assert document.index_state == IndexState.FAILED.value
        assert "too short" in document.index_error
        assert document.lease_expires_at is None
        assert usage_gate.recorded == []

    @pytest.mark.asyncio
    async def test_embedding_failure_keeps_previous_chunks(
        self, coordinator, embedding_provider, vector_store, add_document, get_document
    ):
        doc = await add_document(CALCULUS_NOTES)
        await coordinator.index_document(doc)
        before = await vector_store.list_chunks(doc)

        embedding_provider.errors.append(ProviderRejected(provider="fake-embed"))
        with pytest.raises(ProviderRejected):
            await coordinator.index_document(doc)

        document = await get_document(doc)
        assert document.index_state == IndexState.FAILED.value
        assert document.index_error.startswith("PROVIDER_REJECTED")
        assert document.active_generation == 1
        assert await vector_store.list_chunks(doc) == before

    @pytest.mark.asyncio
    async def test_failed_document_can_be_retried(self, coordinator, embedding_provider, add_document, get_document):
        doc = await add_document(CALCULUS_NOTES)
        embedding_provider.errors.append(ProviderRejected(provider="fake-embed"))
        with pytest.raises(ProviderRejected):
            await coordinator.index_document(doc)

        await coordinator.index_document(doc)
        assert (await get_document(doc)).index_state == IndexState.INDEXED.value

    @pytest.mark.asyncio
    async def test_usage_record_failure_does_not_fail_run(self, coordinator, usage_gate, add_document, get_document):
        async def broken_record(owner_id, operation, amount=1):
            raise RagException("billing down", status_code=502)

        usage_gate.record_usage = broken_record
        doc = await add_document(CALCULUS_NOTES)

        await coordinator.index_document(doc)
        assert (await get_document(doc)).index_state == IndexState.INDEXED.value


class TestBeginIndexing:
    """Lease and admission checks."""

    @pytest.mark.asyncio
    async def test_second_begin_is_rejected(self, coordinator, add_document, get_document):
        doc = await add_document(CALCULUS_NOTES)

        state = await coordinator.begin_indexing(doc)
        assert state == IndexState.INDEXING
        assert (await get_document(doc)).index_state == IndexState.INDEXING.value

        with pytest.raises(AlreadyIndexing) as exc_info:
            await coordinator.begin_indexing(doc)
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_or_foreign_document(self, coordinator, add_document):
        doc = await add_document(CALCULUS_NOTES, owner_id="owner-1")

        with pytest.raises(NotFoundError):
            await coordinator.begin_indexing("missing")
        with pytest.raises(NotFoundError):
            await coordinator.begin_indexing(doc, owner_id="owner-2")

    @pytest.mark.asyncio
    async def test_quota_denial_blocks_indexing(
        self, coordinator, usage_gate, embedding_provider, add_document, get_document
    ):
        usage_gate.limits[UsageOperation.DOCUMENT_INDEXED] = 0
        doc = await add_document(CALCULUS_NOTES)

        with pytest.raises(QuotaExceeded):
            await coordinator.begin_indexing(doc)

        assert (await get_document(doc)).index_state == IndexState.NOT_INDEXED.value
        assert embedding_provider.calls == []


class TestWorkerPool:
    """Background execution."""

    @pytest.mark.asyncio
    async def test_submitted_run_completes(self, coordinator, add_document, get_document):
        pool = IndexingWorkerPool(coordinator, concurrency=2, queue_maxsize=10)
        await pool.start()
        try:
            first = await add_document(CALCULUS_NOTES)
            second = await add_document("x")
            for doc in (first, second):
                await coordinator.begin_indexing(doc)
                pool.submit(doc)
            await pool.join()
        finally:
            await pool.stop()

        assert (await get_document(first)).index_state == IndexState.INDEXED.value
        # A failing run is recorded on its document and does not stop the pool
        assert (await get_document(second)).index_state == IndexState.FAILED.value
        assert not pool.is_running

    @pytest.mark.asyncio
    async def test_stop_fails_queued_runs_and_releases_lease(self, coordinator, add_document, get_document):
        doc = await add_document(CALCULUS_NOTES)
        pool = IndexingWorkerPool(coordinator, concurrency=1, queue_maxsize=10)
        await coordinator.begin_indexing(doc)
        pool.submit(doc)

        await pool.start()
        await pool.stop()

        document = await get_document(doc)
        assert document.index_state == IndexState.FAILED.value
        assert document.index_error == "Indexing was cancelled"
        assert document.lease_expires_at is None
        assert pool.pending == 0
        # The document can be indexed again right away
        assert await coordinator.begin_indexing(doc) == IndexState.INDEXING

    @pytest.mark.asyncio
    async def test_full_queue_is_rejected(self, coordinator):
        pool = IndexingWorkerPool(coordinator, concurrency=1, queue_maxsize=1)
        pool.submit("doc-1")

        with pytest.raises(RagException) as exc_info:
            pool.submit("doc-2")
        assert exc_info.value.status_code == 503
        assert exc_info.value.code == "INDEXING_QUEUE_FULL"

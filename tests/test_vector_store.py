"""Tests for the Qdrant-backed vector store."""

import asyncio
from types import SimpleNamespace

import pytest

from campus_rag.models.chunk import OwnerScope, TextChunk
from campus_rag.services.vector_store import VectorStore
from campus_rag.utils.errors import DimensionMismatchError, InvalidInput, NotFoundError

from .conftest import DIMENSION, embed_keywords


def make_chunks(texts):
    chunks, offset = [], 0
    for i, text in enumerate(texts):
        chunks.append(
            TextChunk(
                ordinal=i,
                text=text,
                token_count=len(text.split()),
                offset_start=offset,
                offset_end=offset + len(text),
            )
        )
        offset += len(text)
    return chunks


async def index(store, document_id, texts):
    chunks = make_chunks(texts)
    return await store.upsert_chunks(document_id, chunks, [embed_keywords(t) for t in texts])


class TestUpsert:
    """Chunk replacement."""

    @pytest.mark.asyncio
    async def test_upsert_then_list(self, vector_store, add_document, get_document):
        doc = await add_document("x" * 100)
        generation = await index(vector_store, doc, ["derivative one", "integral two", "matrix three"])

        assert generation == 1
        stored = await vector_store.list_chunks(doc)
        assert [c.ordinal for c in stored] == [0, 1, 2]
        assert stored[1].text == "integral two"
        assert (await get_document(doc)).active_generation == 1
        assert (await get_document(doc)).chunk_count == 3

    @pytest.mark.asyncio
    async def test_reindex_replaces_previous_chunks(self, vector_store, add_document):
        doc = await add_document("x" * 100)
        await index(vector_store, doc, ["derivative a", "derivative b", "derivative c"])
        generation = await index(vector_store, doc, ["integral only"])

        assert generation == 2
        stored = await vector_store.list_chunks(doc)
        assert [c.text for c in stored] == ["integral only"]

        results = await vector_store.search(
            embed_keywords("derivative"), OwnerScope(owner_id="owner-1"), top_k=10, min_score=0.0
        )
        assert {r.chunk.generation for r in results} == {2}

    @pytest.mark.asyncio
    async def test_point_ids_are_deterministic(self):
        first = VectorStore.make_point_id("doc", 1, 0)
        assert first == VectorStore.make_point_id("doc", 1, 0)
        assert first != VectorStore.make_point_id("doc", 2, 0)

    @pytest.mark.asyncio
    async def test_unknown_document(self, vector_store):
        with pytest.raises(NotFoundError):
            await index(vector_store, "missing", ["derivative"])

    @pytest.mark.asyncio
    async def test_rejects_gaps_in_ordinals(self, vector_store, add_document):
        doc = await add_document("x" * 100)
        chunks = make_chunks(["derivative", "integral"])
        chunks[1] = chunks[1].model_copy(update={"ordinal": 5})
        with pytest.raises(InvalidInput):
            await vector_store.upsert_chunks(doc, chunks, [embed_keywords("a"), embed_keywords("b")])

    @pytest.mark.asyncio
    async def test_rejects_wrong_vector_size(self, vector_store, add_document):
        doc = await add_document("x" * 100)
        with pytest.raises(DimensionMismatchError):
            await vector_store.upsert_chunks(doc, make_chunks(["derivative"]), [[1.0, 0.0]])

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_snapshot(self, vector_store, add_document, monkeypatch):
        doc = await add_document("x" * 100)
        await index(vector_store, doc, ["derivative kept"])

        async def broken_activate(self, *args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(
            "campus_rag.repositories.document_repository.DocumentRepository.activate_generation",
            broken_activate,
        )
        with pytest.raises(Exception):
            await index(vector_store, doc, ["integral never visible"])

        stored = await vector_store.list_chunks(doc)
        assert [c.text for c in stored] == ["derivative kept"]
        results = await vector_store.search(
            embed_keywords("integral"), OwnerScope(owner_id="owner-1"), top_k=10, min_score=0.0
        )
        assert all(r.chunk.text == "derivative kept" for r in results)


class TestSearch:
    """Similarity search."""

    @pytest.mark.asyncio
    async def test_threshold_is_respected(self, vector_store, add_document):
        doc = await add_document("x" * 100)
        await index(vector_store, doc, ["derivative derivative", "integral", "poem", "market cell"])
        query = embed_keywords("what is a derivative?")

        for min_score in (0.0, 0.3, 0.7, 0.95):
            results = await vector_store.search(
                query, OwnerScope(owner_id="owner-1"), top_k=10, min_score=min_score
            )
            assert all(r.score >= min_score for r in results)

    @pytest.mark.asyncio
    async def test_raising_threshold_never_adds_results(self, vector_store, add_document):
        doc = await add_document("x" * 100)
        await index(
            vector_store,
            doc,
            ["derivative", "derivative integral", "derivative integral matrix", "poem", "cell"],
        )
        query = embed_keywords("derivative")
        counts = []
        for min_score in (0.0, 0.2, 0.5, 0.7, 0.9, 1.0):
            results = await vector_store.search(
                query, OwnerScope(owner_id="owner-1"), top_k=10, min_score=min_score
            )
            counts.append(len(results))
        assert counts == sorted(counts, reverse=True)

    @pytest.mark.asyncio
    async def test_results_ranked_by_score(self, vector_store, add_document):
        doc = await add_document("x" * 100)
        await index(vector_store, doc, ["integral", "derivative integral", "derivative"])
        results = await vector_store.search(
            embed_keywords("derivative"), OwnerScope(owner_id="owner-1"), top_k=3, min_score=0.0
        )
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)
        assert results[0].chunk.text == "derivative"

    @pytest.mark.asyncio
    async def test_equal_scores_break_ties_by_ordinal(self, vector_store, add_document):
        doc = await add_document("x" * 100)
        await index(vector_store, doc, ["derivative", "poem", "derivative", "derivative"])
        results = await vector_store.search(
            embed_keywords("derivative"), OwnerScope(owner_id="owner-1"), top_k=2, min_score=0.5
        )
        assert [r.chunk.ordinal for r in results] == [0, 2]

    @pytest.mark.asyncio
    async def test_equal_scores_and_ordinals_prefer_recently_indexed(
        self, vector_store, add_document, monkeypatch
    ):
        older = await add_document("x" * 100, document_id="doc-a")
        newer = await add_document("x" * 100, document_id="doc-z")
        monkeypatch.setattr("campus_rag.services.vector_store.time", SimpleNamespace(time=lambda: 1000.0))
        await index(vector_store, older, ["derivative"])
        monkeypatch.setattr("campus_rag.services.vector_store.time", SimpleNamespace(time=lambda: 2000.0))
        await index(vector_store, newer, ["derivative"])

        results = await vector_store.search(
            embed_keywords("derivative"), OwnerScope(owner_id="owner-1"), top_k=2, min_score=0.5
        )

        assert [r.chunk.document_id for r in results] == ["doc-z", "doc-a"]
        assert results[0].score == results[1].score
        assert results[0].chunk.indexed_at == 2000.0

    @pytest.mark.asyncio
    async def test_never_returns_other_owners_chunks(self, vector_store, add_document):
        mine = await add_document("x" * 100, owner_id="owner-1")
        theirs = await add_document("x" * 100, owner_id="owner-2")
        await index(vector_store, mine, ["poem about derivative"])
        # Ranks higher for the query but belongs to someone else
        await index(vector_store, theirs, ["derivative derivative derivative"])

        results = await vector_store.search(
            embed_keywords("derivative"), OwnerScope(owner_id="owner-1"), top_k=10, min_score=0.0
        )
        assert results
        assert {r.chunk.document_id for r in results} == {mine}

    @pytest.mark.asyncio
    async def test_subject_and_document_scoping(self, vector_store, add_document):
        calculus = await add_document("x" * 100, subject_id="calc")
        biology = await add_document("x" * 100, subject_id="bio")
        await index(vector_store, calculus, ["derivative cell"])
        await index(vector_store, biology, ["cell derivative"])
        query = embed_keywords("derivative cell")

        by_subject = await vector_store.search(
            query, OwnerScope(owner_id="owner-1", subject_id="bio"), top_k=10, min_score=0.0
        )
        assert {r.chunk.document_id for r in by_subject} == {biology}

        by_document = await vector_store.search(
            query, OwnerScope(owner_id="owner-1", document_ids=[calculus]), top_k=10, min_score=0.0
        )
        assert {r.chunk.document_id for r in by_document} == {calculus}

        nothing = await vector_store.search(
            query, OwnerScope(owner_id="owner-1", document_ids=[]), top_k=10, min_score=0.0
        )
        assert nothing == []

    @pytest.mark.asyncio
    async def test_unindexed_owner_gets_nothing(self, vector_store):
        results = await vector_store.search(
            embed_keywords("derivative"), OwnerScope(owner_id="nobody"), top_k=5, min_score=0.0
        )
        assert results == []

    @pytest.mark.asyncio
    async def test_query_dimension_checked(self, vector_store):
        with pytest.raises(DimensionMismatchError):
            await vector_store.search([1.0], OwnerScope(owner_id="owner-1"))

    @pytest.mark.asyncio
    async def test_concurrent_reindex_never_mixes_generations(self, vector_store, add_document):
        doc = await add_document("x" * 100)
        old = ["derivative old %d" % i for i in range(6)]
        new = ["derivative new %d" % i for i in range(4)]
        await index(vector_store, doc, old)

        async def reader():
            seen = []
            for _ in range(20):
                results = await vector_store.search(
                    embed_keywords("derivative"), OwnerScope(owner_id="owner-1"), top_k=10, min_score=0.0
                )
                seen.append({r.chunk.generation for r in results})
                await asyncio.sleep(0)
            return seen

        reads, _ = await asyncio.gather(reader(), index(vector_store, doc, new))
        for generations in reads:
            assert len(generations) == 1


class TestCollection:
    """Collection lifecycle."""

    @pytest.mark.asyncio
    async def test_existing_collection_with_other_dimension(self, qdrant_client, session_factory):
        first = VectorStore(qdrant_client, session_factory, dimension=DIMENSION, collection_name="dims")
        await first.ensure_collection()
        await first.ensure_collection()

        other = VectorStore(qdrant_client, session_factory, dimension=DIMENSION * 2, collection_name="dims")
        with pytest.raises(DimensionMismatchError):
            await other.ensure_collection()

    @pytest.mark.asyncio
    async def test_delete_document(self, vector_store, add_document, get_document):
        keep = await add_document("x" * 100)
        drop = await add_document("x" * 100)
        await index(vector_store, keep, ["derivative keep"])
        await index(vector_store, drop, ["derivative drop"])

        await vector_store.delete_document(drop)

        assert await vector_store.list_chunks(drop) == []
        document = await get_document(drop)
        assert document.active_generation is None
        assert document.chunk_count == 0
        results = await vector_store.search(
            embed_keywords("derivative"), OwnerScope(owner_id="owner-1"), top_k=10, min_score=0.0
        )
        assert {r.chunk.document_id for r in results} == {keep}

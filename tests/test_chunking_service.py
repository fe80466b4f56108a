"""Tests for the token-window chunker."""

import pytest

from campus_rag.services.chunking_service import ChunkingService
from campus_rag.utils.errors import ChunkingError, InvalidInput


@pytest.fixture(scope="module")
def chunker():
    return ChunkingService(encoding_name="cl100k_base")


def repeated_words(count: int, word: str = "hello") -> str:
    # " hello" is a single cl100k token, so this text has exactly ``count`` tokens
    return word + f" {word}" * (count - 1)


class TestChunkText:
    """Window placement and boundaries."""

    def test_600_tokens_yield_two_overlapping_chunks(self, chunker):
        text = repeated_words(600)
        assert chunker.count_tokens(text) == 600

        chunks = chunker.chunk_text(text, chunk_size=500, overlap=50)

        assert len(chunks) == 2
        first, second = chunks
        assert first.token_count == 500
        assert second.token_count == 150
        assert second.offset_start < first.offset_end
        shared = text[second.offset_start : first.offset_end]
        assert chunker.count_tokens(shared) == 50
        assert first.text.endswith(shared)
        assert second.text.startswith(shared)

    def test_chunk_text_is_exact_source_slice(self, chunker):
        text = "Derivatives measure change.\n\n" * 80
        for chunk in chunker.chunk_text(text, chunk_size=60, overlap=10):
            assert chunk.text == text[chunk.offset_start : chunk.offset_end]

    def test_covers_whole_text(self, chunker):
        text = repeated_words(1234)
        chunks = chunker.chunk_text(text, chunk_size=100, overlap=20)
        assert chunks[0].offset_start == 0
        assert chunks[-1].offset_end == len(text)
        assert [c.ordinal for c in chunks] == list(range(len(chunks)))

    def test_short_text_is_single_chunk(self, chunker):
        text = "A derivative is the instantaneous rate of change of a function."
        chunks = chunker.chunk_text(text, chunk_size=500, overlap=50)
        assert len(chunks) == 1
        assert chunks[0].text == text
        assert chunks[0].offset_start == 0
        assert chunks[0].offset_end == len(text)

    def test_small_trailing_remainder_is_merged(self, chunker):
        # Second window would add only 20 new tokens (< overlap)
        chunks = chunker.chunk_text(repeated_words(520), chunk_size=500, overlap=50)
        assert len(chunks) == 1
        assert chunks[0].token_count == 520

    def test_chunk_size_bound(self, chunker):
        size, overlap = 40, 10
        for total in (39, 40, 41, 75, 79, 80, 200, 211):
            chunks = chunker.chunk_text(repeated_words(total), chunk_size=size, overlap=overlap)
            assert all(c.token_count <= size + overlap - 1 for c in chunks)
            assert all(c.token_count > 0 for c in chunks)

    def test_blank_text_yields_no_chunks(self, chunker):
        assert chunker.chunk_text("   \n\t ") == []
        assert chunker.chunk_text("") == []

    def test_rechunking_is_deterministic(self, chunker):
        text = "The chain rule composes derivatives. " * 120
        first = chunker.chunk_text(text, chunk_size=64, overlap=8)
        second = chunker.chunk_text(text, chunk_size=64, overlap=8)
        assert [c.model_dump() for c in first] == [c.model_dump() for c in second]


class TestChunkValidation:
    """Invalid window configurations."""

    @pytest.mark.parametrize(
        "chunk_size,overlap",
        [(0, 0), (-5, 0), (100, -1), (100, 100), (50, 80)],
    )
    def test_invalid_windows_raise(self, chunker, chunk_size, overlap):
        with pytest.raises(ChunkingError):
            chunker.chunk_text("some text", chunk_size=chunk_size, overlap=overlap)

    def test_chunking_error_is_invalid_input(self, chunker):
        with pytest.raises(InvalidInput) as exc_info:
            chunker.chunk_text("text", chunk_size=10, overlap=10)
        assert exc_info.value.code == "CHUNKING_ERROR"
        assert exc_info.value.status_code == 422

"""Text chunking service for RAG ingestion."""

from typing import List, Optional, Tuple

import tiktoken

from campus_rag.config import get_settings
from campus_rag.models.chunk import TextChunk
from campus_rag.utils.errors import ChunkingError
from campus_rag.utils.logging import get_logger

logger = get_logger("chunking_service")
settings = get_settings()


class ChunkingService:
    """
    Split text into overlapping token windows.

    Windows advance by ``chunk_size - overlap`` tokens. Each chunk's text is the
    exact slice of the source between the character offsets of its first and
    last token, so unchanged text always yields byte-identical boundaries.
    A trailing window that adds fewer than ``overlap`` new tokens is folded into
    the previous chunk instead of being emitted on its own.
    """

    def __init__(self, encoding_name: Optional[str] = None):
        """
        Initialize the chunking service.

        Args:
            encoding_name: tiktoken encoding name to use for token counting/slicing
        """
        self.encoding_name = encoding_name or settings.chunking.chunk_encoding
        self._encoding = tiktoken.get_encoding(self.encoding_name)

    def tokenize(self, text: str) -> List[int]:
        # Special-token text inside documents is treated as ordinary text
        return self._encoding.encode(text, disallowed_special=())

    def count_tokens(self, text: str) -> int:
        return len(self.tokenize(text))

    def chunk_text(
        self,
        text: str,
        chunk_size: Optional[int] = None,
        overlap: Optional[int] = None,
    ) -> List[TextChunk]:
        """
        Chunk text into overlapping windows.

        Args:
            text: Input text to chunk
            chunk_size: Tokens per window (defaults to settings.chunking.chunk_size)
            overlap: Tokens shared by consecutive windows (defaults to settings.chunking.chunk_overlap)

        Returns:
            Ordered list of TextChunk instances; empty when the text is blank

        Raises:
            ChunkingError: If the window configuration is invalid
        """
        if text is None:
            raise ChunkingError("Text is None")

        chunk_size = chunk_size if chunk_size is not None else settings.chunking.chunk_size
        overlap = overlap if overlap is not None else settings.chunking.chunk_overlap

        if chunk_size <= 0:
            raise ChunkingError("chunk_size must be > 0", details={"chunk_size": chunk_size})
        if overlap < 0:
            raise ChunkingError("overlap must be >= 0", details={"overlap": overlap})
        if overlap >= chunk_size:
            raise ChunkingError(
                "overlap must be less than chunk_size",
                details={"overlap": overlap, "chunk_size": chunk_size},
            )

        if not text.strip():
            return []

        tokens = self.tokenize(text)
        if not tokens:
            return []

        _, offsets = self._encoding.decode_with_offsets(tokens)
        windows = self._windows(len(tokens), chunk_size, overlap)

        chunks: List[TextChunk] = []
        for ordinal, (start, end) in enumerate(windows):
            char_start = offsets[start]
            char_end = offsets[end] if end < len(tokens) else len(text)
            chunks.append(
                TextChunk(
                    ordinal=ordinal,
                    text=text[char_start:char_end],
                    token_count=end - start,
                    offset_start=char_start,
                    offset_end=char_end,
                )
            )

        logger.debug(
            f"Chunked text: tokens={len(tokens)}, chunks={len(chunks)}, "
            f"chunk_size={chunk_size}, overlap={overlap}"
        )
        return chunks

    @staticmethod
    def _windows(total: int, chunk_size: int, overlap: int) -> List[Tuple[int, int]]:
        """Token index ranges ``[start, end)`` of every window."""
        step = chunk_size - overlap
        windows: List[Tuple[int, int]] = []
        start = 0
        while True:
            end = min(start + chunk_size, total)
            windows.append((start, end))
            if end >= total:
                break
            start += step

        if len(windows) > 1:
            prev_start, prev_end = windows[-2]
            _, last_end = windows[-1]
            if last_end - prev_end < overlap:
                windows[-2:] = [(prev_start, last_end)]

        return windows


_chunking_service: Optional[ChunkingService] = None


def get_chunking_service() -> ChunkingService:
    """Get or create the global chunking service."""
    global _chunking_service
    if _chunking_service is None:
        _chunking_service = ChunkingService()
    return _chunking_service

"""
Chunker Module - Deterministic text chunking for embedding.
===========================================================

Splits normalized document content into chunks:
- Fixed-size windows with overlap, snapped back to a word break when one
  is close enough
- Or caller-supplied cut offsets ("boundaries"), stored with the document
  so a resumed pipeline reproduces the same chunks

The same content and policy always yield the same spans, so chunk vector
ids are stable across retries and re-ingestion.
"""

from dataclasses import dataclass
from typing import Optional

from docvector.shared.errors import ConfigurationError, InvalidDocument
from docvector.shared.logging import get_logger
from docvector.shared.schemas import Chunk

logger = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Chunking Configuration
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class ChunkerConfig:
    """Configuration for text chunking."""

    # Chunk size limits (in characters)
    chunk_size: int = 1000
    chunk_overlap: int = 200

    # Move a cut back to the last whitespace if it is in the window's back half
    prefer_word_breaks: bool = True

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ConfigurationError(f"chunk_size must be positive, got {self.chunk_size}")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ConfigurationError(
                f"chunk_overlap must be in [0, chunk_size), got {self.chunk_overlap}"
            )


Span = tuple[int, int]


# ─────────────────────────────────────────────────────────────────────────────
# Chunker
# ─────────────────────────────────────────────────────────────────────────────


class Chunker:
    """
    Splits text into chunks with stable offsets.

    Example:
        >>> chunker = Chunker(ChunkerConfig(chunk_size=500, chunk_overlap=50))
        >>> chunks = chunker.chunk(document_id, content)
        >>> [c.vector_id for c in chunks]
    """

    def __init__(self, config: Optional[ChunkerConfig] = None):
        self.config = config or ChunkerConfig()

    def split_spans(self, text: str) -> list[Span]:
        """
        Compute fixed-size spans with overlap.

        Args:
            text: Normalized content

        Returns:
            (start, end) offsets; whitespace-only windows are skipped
        """
        if not text:
            return []

        size = self.config.chunk_size
        overlap = self.config.chunk_overlap
        length = len(text)

        spans: list[Span] = []
        start = 0
        while start < length:
            end = min(start + size, length)
            if end < length and self.config.prefer_word_breaks:
                end = self._snap_to_word_break(text, start, end)

            if text[start:end].strip():
                spans.append((start, end))
            if end >= length:
                break

            start = max(end - overlap, start + 1)

        return spans

    def _snap_to_word_break(self, text: str, start: int, end: int) -> int:
        # Keep at least half the window so chunks do not shrink to slivers
        floor = start + max(1, (end - start) // 2)
        for i in range(end, floor, -1):
            if text[i - 1].isspace():
                return i
        return end

    def spans_from_boundaries(self, text: str, boundaries: list[int]) -> list[Span]:
        """
        Turn caller cut offsets into spans.

        Args:
            text: Normalized content
            boundaries: Strictly increasing offsets inside (0, len(text))

        Raises:
            InvalidDocument: If offsets are out of range, unordered, or cut
                out an empty segment
        """
        length = len(text)
        cuts = [0]
        for offset in boundaries:
            if not isinstance(offset, int) or isinstance(offset, bool):
                raise InvalidDocument(f"Chunk boundary must be an integer, got {offset!r}")
            if offset <= cuts[-1] or offset >= length:
                raise InvalidDocument(
                    f"Chunk boundaries must be strictly increasing offsets in (0, {length}), "
                    f"got {boundaries}"
                )
            cuts.append(offset)
        cuts.append(length)

        spans = list(zip(cuts, cuts[1:]))
        for i, (start, end) in enumerate(spans):
            if not text[start:end].strip():
                raise InvalidDocument(f"Chunk {i} between offsets {start} and {end} is blank")
        return spans

    def chunk(
        self,
        document_id: str,
        text: str,
        boundaries: Optional[list[int]] = None,
    ) -> list[Chunk]:
        """
        Chunk a document's normalized content.

        Args:
            document_id: Owning document id (seeds the vector ids)
            text: Normalized content
            boundaries: Optional caller cut offsets

        Returns:
            Chunks in sequence order
        """
        if boundaries:
            spans = self.spans_from_boundaries(text, boundaries)
        else:
            spans = self.split_spans(text)

        chunks = [
            Chunk.create(
                document_id=document_id,
                sequence=i,
                text=text[start:end],
                start=start,
                end=end,
            )
            for i, (start, end) in enumerate(spans)
        ]

        logger.debug(f"Chunked document {document_id[:12]} into {len(chunks)} chunks")
        return chunks

"""
Chunking Service

Splits extracted document text into overlapping windows suitable for
embedding and vector retrieval.

Each window is cut at the sentence or paragraph boundary nearest to its
end instead of at the raw character limit, and the next window starts
``chunk_overlap`` characters before that cut. The output depends only on
the text and the two parameters, which the deterministic vector-id
scheme (``{documentId}_chunk_{i}``) relies on.
"""

from __future__ import annotations

import logging
from typing import Final

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE: int = 1000
DEFAULT_CHUNK_OVERLAP: int = 200

BOUNDARY_TOKENS: Final[tuple[str, ...]] = (". ", "? ", "! ", "\n\n")


class TextChunker:
    """
    Splits text into overlapping, boundary-aligned chunks.

    Usage::

        chunker = TextChunker(chunk_size=1000, chunk_overlap=200)
        chunks = chunker.chunk(text)

    Args:
        chunk_size: Maximum characters per chunk.
        chunk_overlap: Characters shared between consecutive chunks.
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        if chunk_overlap < 0:
            raise ValueError(f"chunk_overlap must not be negative, got {chunk_overlap}")
        if chunk_overlap >= chunk_size:
            raise ValueError(
                f"chunk_overlap ({chunk_overlap}) must be less than "
                f"chunk_size ({chunk_size})"
            )
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap

    @property
    def chunk_size(self) -> int:
        """Maximum characters per chunk."""
        return self._chunk_size

    @property
    def chunk_overlap(self) -> int:
        """Characters shared between consecutive chunks."""
        return self._chunk_overlap

    def chunk(self, text: str) -> list[str]:
        """
        Split ``text`` into chunks.

        Returns an empty list for empty input and a single chunk when the
        text is not longer than ``chunk_size``.
        """
        chunks: list[str] = []
        start = 0
        length = len(text)

        while start < length:
            end = start + self._chunk_size
            if end >= length:
                chunks.append(text[start:])
                break

            cut = self._find_cut(text, start, end)
            chunks.append(text[start:cut])

            next_start = cut - self._chunk_overlap
            # A boundary close to the window start must not stall the scan
            start = next_start if next_start > start else cut

        logger.debug(
            "Split %d chars into %d chunks (size=%d, overlap=%d)",
            length,
            len(chunks),
            self._chunk_size,
            self._chunk_overlap,
        )
        return chunks

    @staticmethod
    def _find_cut(text: str, start: int, end: int) -> int:
        """
        Position right after the boundary token nearest to ``end``.

        Only tokens lying entirely inside ``(start, end]`` count; without
        one the window is cut at ``end``.
        """
        best = -1
        for token in BOUNDARY_TOKENS:
            pos = text.rfind(token, start + 1, end)
            if pos != -1:
                best = max(best, pos + len(token))
        return best if best != -1 else end

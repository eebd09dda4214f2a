"""Document chunking.

Splits extracted text into overlapping windows that end on the cleanest
available boundary, suitable for embedding and retrieval.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass

from knowledge_engine.core.errors import ValidationError
from knowledge_engine.rag.text import sanitize_text

logger = logging.getLogger(__name__)

# Boundary preference, strongest first
SEPARATOR_TIERS: tuple[tuple[str, ...], ...] = (
    ("\n\n",),
    ("\n", "。", "！", "？", "；", ". ", "! ", "? ", "; "),
    ("，", ", ", " "),
)

# A boundary must fall beyond this fraction of the window
MIN_BOUNDARY_RATIO = 0.3

DEFAULT_CHUNK_SIZE = 1000
DEFAULT_CHUNK_OVERLAP = 150
DEFAULT_MAX_CHUNKS = 5000


@dataclass
class Chunk:
    """A document chunk ready for embedding."""

    index: int
    text: str
    start_char: int
    end_char: int
    metadata: dict


class ChunkingStrategy(ABC):
    """Base class for chunking strategies."""

    @abstractmethod
    def chunk(self, text: str, metadata: dict | None = None) -> list[Chunk]:
        """Split text into chunks."""


class SemanticChunker(ChunkingStrategy):
    """Sliding-window chunking that prefers paragraph and sentence breaks.

    For every window except the last, the cut moves back to the latest
    separator of the strongest tier that lies in the trailing 70% of the
    window. Falls back to a hard cut at `chunk_size` characters.

    Stops after `max_chunks` chunks and returns what it has.
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
        max_chunks: int = DEFAULT_MAX_CHUNKS,
    ):
        if chunk_size <= 0:
            raise ValidationError(f"chunk_size must be positive, got {chunk_size}")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValidationError(
                f"chunk_overlap must be in [0, chunk_size), got {chunk_overlap}"
            )
        if max_chunks <= 0:
            raise ValidationError(f"max_chunks must be positive, got {max_chunks}")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.max_chunks = max_chunks

    def chunk(self, text: str, metadata: dict | None = None) -> list[Chunk]:
        """Split text into overlapping chunks.

        Args:
            text: Extracted document text
            metadata: Caller metadata (source, parse_method, pages) copied onto
                every chunk

        Returns:
            Chunks in document order, at most `max_chunks`
        """
        if not text or not text.strip():
            return []

        base_metadata = dict(metadata or {})
        pages = max(int(base_metadata.pop("pages", 0) or 0), 1)
        chars_per_page = max(len(text) / pages, 1.0)

        chunks: list[Chunk] = []
        length = len(text)
        start = 0

        while start < length:
            if len(chunks) >= self.max_chunks:
                logger.warning(
                    f"[Chunker] Reached max_chunks={self.max_chunks} at offset {start}/{length}, "
                    f"returning partial result"
                )
                break

            end = min(start + self.chunk_size, length)
            if end < length:
                end = self._find_boundary(text, start, end)

            piece = sanitize_text(text[start:end]).strip()
            if piece:
                chunks.append(
                    Chunk(
                        index=len(chunks),
                        text=piece,
                        start_char=start,
                        end_char=end,
                        metadata={
                            **base_metadata,
                            "chunk_index": len(chunks),
                            "page_start": self._estimate_page(start, chars_per_page, pages),
                            "page_end": self._estimate_page(end - 1, chars_per_page, pages),
                        },
                    )
                )

            if end >= length:
                break

            # Overlap, but always move forward
            next_start = end - self.chunk_overlap
            start = next_start if next_start > start else end

        return chunks

    def _find_boundary(self, text: str, start: int, end: int) -> int:
        window = text[start:end]
        min_pos = len(window) * MIN_BOUNDARY_RATIO

        for tier in SEPARATOR_TIERS:
            best = -1
            for separator in tier:
                pos = window.rfind(separator)
                if pos > min_pos:
                    best = max(best, pos + len(separator))
            if best > 0:
                return start + best

        return end

    @staticmethod
    def _estimate_page(offset: int, chars_per_page: float, pages: int) -> int:
        return min(math.floor(max(offset, 0) / chars_per_page) + 1, pages)


def chunk_text(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    max_chunks: int = DEFAULT_MAX_CHUNKS,
    metadata: dict | None = None,
) -> list[Chunk]:
    """Chunk text with a one-off SemanticChunker."""
    return SemanticChunker(chunk_size, chunk_overlap, max_chunks).chunk(text, metadata)


def get_chunker(**kwargs) -> ChunkingStrategy:
    """Get the configured chunking strategy.

    Args:
        **kwargs: chunk_size, chunk_overlap, max_chunks

    Returns:
        Configured chunking strategy
    """
    return SemanticChunker(**kwargs)


__all__ = [
    "Chunk",
    "ChunkingStrategy",
    "SemanticChunker",
    "chunk_text",
    "get_chunker",
]

"""Text chunking with fixed size and overlap."""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any

import tiktoken

from app.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkPreset:
    """Chunk size/overlap pair (characters) for one kind of source."""

    chunk_size: int
    chunk_overlap: int


# Long pages get more context per chunk; short snippets need little overlap.
PRESETS: dict[str, ChunkPreset] = {
    "website": ChunkPreset(settings.website_chunk_size, settings.website_chunk_overlap),
    "text": ChunkPreset(settings.text_chunk_size, settings.text_chunk_overlap),
    "qa": ChunkPreset(settings.text_chunk_size, settings.text_chunk_overlap),
    "default": ChunkPreset(settings.chunk_size, settings.chunk_overlap),
}


@dataclass
class TextChunk:
    """A chunk of text with metadata."""

    content: str
    content_hash: str
    token_count: int
    chunk_index: int
    start_offset: int
    end_offset: int
    metadata: dict[str, Any] = field(default_factory=dict)


def split_text(text: str, size: int, overlap: int) -> list[str]:
    """Split text into fixed windows of ``size`` characters.

    Each window after the first starts ``overlap`` characters before the end
    of the previous one, so neighbours share exactly ``overlap`` characters
    and no window is longer than ``size``. With ``overlap == 0`` joining the
    windows gives back the original text.
    """
    return [text[start:end] for start, end in _windows(len(text), size, overlap)]


def _windows(length: int, size: int, overlap: int) -> list[tuple[int, int]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    if overlap < 0 or overlap >= size:
        raise ValueError("chunk overlap must satisfy 0 <= overlap < size")

    spans = []
    step = size - overlap
    start = 0
    while start < length:
        end = min(start + size, length)
        spans.append((start, end))
        if end == length:
            break
        start += step
    return spans


class Chunker:
    """Fixed-size chunker with overlap."""

    def __init__(
        self,
        chunk_size: int = settings.chunk_size,
        chunk_overlap: int = settings.chunk_overlap,
        max_chunks: int = settings.max_chunks_per_source,
        encoding_name: str = "cl100k_base",  # text-embedding-3 encoding
    ):
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError("chunk overlap must satisfy 0 <= overlap < size")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.max_chunks = max_chunks
        self.encoding = tiktoken.get_encoding(encoding_name)

    @classmethod
    def for_source_type(cls, source_type: str) -> "Chunker":
        """Build a chunker from the preset registered for a source type."""
        preset = PRESETS.get(source_type, PRESETS["default"])
        return cls(chunk_size=preset.chunk_size, chunk_overlap=preset.chunk_overlap)

    def count_tokens(self, text: str) -> int:
        """Count tokens in text."""
        return len(self.encoding.encode(text, disallowed_special=()))

    def _compute_hash(self, text: str) -> str:
        """Compute hash of chunk content."""
        return hashlib.sha256(text.encode()).hexdigest()

    def chunk_page(
        self,
        text: str,
        metadata: dict[str, Any] | None = None,
        start_index: int = 0,
    ) -> list[TextChunk]:
        """Chunk a single text block, attaching ``metadata`` to every chunk."""
        if not text or not text.strip():
            return []

        spans = _windows(len(text), self.chunk_size, self.chunk_overlap)
        chunks = []
        for i, (start, end) in enumerate(spans):
            content = text[start:end]
            chunks.append(TextChunk(
                content=content,
                content_hash=self._compute_hash(content),
                token_count=self.count_tokens(content),
                chunk_index=start_index + i,
                start_offset=start,
                end_offset=end,
                metadata={
                    **(metadata or {}),
                    "start_char": start,
                    "end_char": end,
                },
            ))
        return chunks

    def chunk_pages(self, pages: list[tuple[str, dict[str, Any]]]) -> list[TextChunk]:
        """Chunk several (text, metadata) pages into one ordered sequence.

        Chunk indices run across pages. The sequence is cut at ``max_chunks``.
        """
        all_chunks: list[TextChunk] = []
        for text, metadata in pages:
            page_chunks = self.chunk_page(text, metadata, start_index=len(all_chunks))
            all_chunks.extend(page_chunks)
            if len(all_chunks) >= self.max_chunks:
                break

        if len(all_chunks) > self.max_chunks:
            logger.warning(
                "Too many chunks (%d), limiting to %d",
                len(all_chunks),
                self.max_chunks,
            )
            all_chunks = all_chunks[: self.max_chunks]

        for chunk in all_chunks:
            chunk.metadata["chunk_index"] = chunk.chunk_index
            chunk.metadata["total_chunks"] = len(all_chunks)
        return all_chunks

"""
Chapter Chunking Engine

Splits long chapter text into bounded segments at natural boundaries:
1. Paragraph-aware splitting (blank lines, falling back to single newlines)
2. A safety split (RecursiveCharacterTextSplitter) for paragraphs that are
   too long on their own: sentences, then words, then a hard slice
3. Merging of very small chunks into their neighbours

The engine is deterministic: the same text and limit always produce the same
chunks. Concatenating the chunk texts reproduces the original text up to
whitespace.
"""

import re
import time
from dataclasses import dataclass

from langchain_text_splitters import RecursiveCharacterTextSplitter

from .config import DEFAULT_CHUNK_SIZE, MIN_CHUNK_LENGTH
from .errors import SegmentationError
from .logging_config import debug_log, debug_timing

PARAGRAPH_BREAK = re.compile(r'\n\s*\n+')
SENTENCE_BREAK = re.compile(r'(?<=[.!?])\s+')


@dataclass(frozen=True)
class Chunk:
    """
    One bounded segment of a job's text.

    Attributes:
        index: Zero-based position in the document (reassembly order).
        total_count: Number of chunks the document was split into.
        text: The segment text.
    """
    index: int
    total_count: int
    text: str

    @property
    def word_count(self) -> int:
        return len(self.text.split())

    @property
    def label(self) -> str:
        """Human-readable position, e.g. 'part 2/5'."""
        return f"part {self.index + 1}/{self.total_count}"


class ChunkingEngine:
    """
    Character-bounded chunking for chapter text.

    Args:
        max_chunk_chars: Default limit used when split() gets no explicit limit.
        min_chunk_length: Chunks shorter than this are merged into a neighbour
            when the merged result still fits the limit.
    """

    def __init__(self, max_chunk_chars: int = DEFAULT_CHUNK_SIZE,
                 min_chunk_length: int = MIN_CHUNK_LENGTH):
        self.max_chunk_chars = max_chunk_chars
        self.min_chunk_length = min_chunk_length

    def split(self, text: str, max_chunk_chars: int | None = None) -> list[Chunk]:
        """
        Split text into chunks no longer than max_chunk_chars.

        Args:
            text: Full chapter text
            max_chunk_chars: Limit in characters (defaults to the engine's limit)

        Returns:
            Ordered list of Chunk objects. Text that already fits comes back
            as a single chunk identical to the input.

        Raises:
            ValueError: If the limit is not positive.
            SegmentationError: If non-empty text yields no chunks.
        """
        limit = max_chunk_chars if max_chunk_chars is not None else self.max_chunk_chars
        if limit <= 0:
            raise ValueError(f"max_chunk_chars must be positive, got {limit}")

        if len(text) <= limit:
            return [Chunk(index=0, total_count=1, text=text)]

        start_time = time.time()
        debug_log(f"[CHUNKER] Splitting {len(text)} chars with limit {limit}")

        segments = self._split_into_paragraphs(text)
        pieces = self._build_chunks(segments, limit)
        pieces = self._merge_small_chunks(pieces, limit)

        if not pieces:
            raise SegmentationError(f"Could not split {len(text)} characters into chunks")

        chunks = [
            Chunk(index=i, total_count=len(pieces), text=piece)
            for i, piece in enumerate(pieces)
        ]

        debug_timing(f"[CHUNKER] Created {len(chunks)} chunks", time.time() - start_time)
        for chunk in chunks:
            debug_log(f"[CHUNKER] {chunk.label}: {len(chunk.text)} chars, {chunk.word_count} words")
        return chunks

    def _split_into_paragraphs(self, text: str) -> list[str]:
        """
        Split text on blank lines; use single newlines if that finds nothing.

        Returns:
            Non-empty, stripped paragraph strings
        """
        paragraphs = [p.strip() for p in PARAGRAPH_BREAK.split(text) if p.strip()]

        if len(paragraphs) <= 1:
            # Some sites separate paragraphs with single line breaks
            paragraphs = [p.strip() for p in text.split('\n') if p.strip()]

        debug_log(f"[CHUNKER] Split text into {len(paragraphs)} paragraphs")
        return paragraphs

    def _build_chunks(self, paragraphs: list[str], limit: int) -> list[str]:
        """
        Accumulate paragraphs until the next one would exceed the limit.

        A paragraph that is over the limit by itself goes through the
        safety splitter instead.
        """
        chunks = []
        current = ""
        safety_splitter = None

        for para in paragraphs:
            if len(para) > limit:
                if current:
                    chunks.append(current)
                    current = ""
                if safety_splitter is None:
                    safety_splitter = self._safety_splitter(limit)
                pieces = safety_splitter.split_text(para)
                debug_log(f"[CHUNKER] Oversized paragraph ({len(para)} chars) split into {len(pieces)} pieces")
                chunks.extend(pieces)
                continue

            candidate = f"{current}\n\n{para}" if current else para
            if len(candidate) > limit:
                chunks.append(current)
                current = para
            else:
                current = candidate

        if current:
            chunks.append(current)

        return chunks

    @staticmethod
    def _safety_splitter(limit: int) -> RecursiveCharacterTextSplitter:
        """
        Splitter for paragraphs longer than the limit: sentence boundaries
        first, then spaces, then single characters, no overlap.
        """
        return RecursiveCharacterTextSplitter(
            chunk_size=limit,
            chunk_overlap=0,
            separators=[SENTENCE_BREAK.pattern, " ", ""],
            is_separator_regex=True,
            length_function=len,
        )

    def _merge_small_chunks(self, chunks: list[str], limit: int) -> list[str]:
        """
        Fold chunks shorter than min_chunk_length into a neighbour.

        A tiny leading chunk is merged forward; tiny middle or trailing chunks
        are merged into the previous one. Merges that would break the limit
        are skipped.
        """
        if len(chunks) <= 1 or self.min_chunk_length <= 0:
            return chunks

        merged: list[str] = []
        for chunk in chunks:
            if merged:
                small = len(chunk) < self.min_chunk_length or len(merged[-1]) < self.min_chunk_length
                fits = len(merged[-1]) + 2 + len(chunk) <= limit
                if small and fits:
                    merged[-1] = f"{merged[-1]}\n\n{chunk}"
                    continue
            merged.append(chunk)

        if len(merged) != len(chunks):
            debug_log(f"[CHUNKER] Merged small chunks: {len(chunks)} -> {len(merged)}")
        return merged

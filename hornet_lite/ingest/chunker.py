"""
Text Chunker
============

Splits OCR text into overlapping, boundary-aware chunks for the RAG context.

- Fixed-size windows with `overlap` characters re-included in the next chunk
- Optional sentence/paragraph boundary preservation (Thai, CJK, Latin)
- Offsets index the source text: chunk.text == text[start_index:end_index]
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from ..models import Chunk

logger = logging.getLogger(__name__)


# Candidate terminators in priority order. The rightmost match in the
# search window wins regardless of priority.
BREAK_MARKERS: Sequence[str] = (
    "\n\n",     # Paragraph
    "\n",       # Line
    "ฯ",        # Thai abbreviation/sentence mark
    "๚",        # Thai angkhankhu
    "๛",        # Thai khomut (end of chapter)
    "।",        # Danda
    "。",       # Chinese/Japanese period
    ".",
    "!",
    "?",
)

LOOKBACK_CHARS = 100
LOOKAHEAD_CHARS = 50


@dataclass(frozen=True)
class ChunkOptions:
    """
    Chunking options.

    Attributes:
        chunk_size: Target characters per chunk (>= 1)
        overlap: Characters shared between consecutive chunks (>= 0)
        preserve_sentences: Move cuts to the nearest sentence/line boundary
    """
    chunk_size: int = 500
    overlap: int = 50
    preserve_sentences: bool = True

    def __post_init__(self):
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {self.chunk_size}")
        if self.overlap < 0:
            raise ValueError(f"overlap must be >= 0, got {self.overlap}")


def _find_break(text: str, start: int, naive_end: int, chunk_size: int) -> Optional[int]:
    """
    Find a boundary-aligned cut for the chunk starting at `start`.

    Searches [start + chunk_size - 100, naive_end + 50) and returns the
    position just after the rightmost terminator, or None.
    """
    search_start = max(start + chunk_size - LOOKBACK_CHARS, start)
    search_text = text[search_start:naive_end + LOOKAHEAD_CHARS]

    best = -1
    for marker in BREAK_MARKERS:
        pos = search_text.rfind(marker)
        if pos > best:
            best = pos

    # A terminator at the very first window position would give a
    # near-empty chunk; ignore it like "not found".
    if best <= 0:
        return None

    return search_start + best + 1


def chunk_text(text: str, options: Optional[ChunkOptions] = None) -> List[Chunk]:
    """
    Split text into chunks.

    Args:
        text: Source text (usually OCR output)
        options: ChunkOptions (defaults: 500 / 50 / preserve sentences)

    Returns:
        Ordered list of Chunk. Empty for empty or whitespace-only text.
    """
    options = options or ChunkOptions()

    if not text or not text.strip():
        return []

    length = len(text)
    chunks: List[Chunk] = []
    start = 0

    while True:
        end = min(start + options.chunk_size, length)

        if options.preserve_sentences and end < length:
            boundary = _find_break(text, start, end, options.chunk_size)
            if boundary is not None:
                end = boundary

        chunks.append(Chunk(
            text=text[start:end],
            start_index=start,
            end_index=end,
            index=len(chunks),
        ))

        if end >= length:
            break

        next_start = end - options.overlap
        if next_start <= start:
            # Overlap would not advance the cursor; continue without overlap
            next_start = end
        start = next_start

    logger.debug(
        f"Text chunking completed: length={length} chunks={len(chunks)} "
        f"avg_chunk={round(length / len(chunks))}"
    )

    return chunks


def chunk_text_simple(text: str, chunk_size: int = 500) -> List[str]:
    """Chunk texts only, no overlap"""
    return [c.text for c in chunk_text(text, ChunkOptions(chunk_size=chunk_size, overlap=0))]


def reconstruct_text(chunks: Sequence[Chunk]) -> str:
    """
    Rebuild the source text from chunks by dropping the overlapping prefix
    of each chunk after the first.
    """
    if not chunks:
        return ""

    parts = [chunks[0].text]
    covered = chunks[0].end_index
    for chunk in chunks[1:]:
        skip = max(covered - chunk.start_index, 0)
        parts.append(chunk.text[skip:])
        covered = max(covered, chunk.end_index)
    return "".join(parts)

"""
Deterministic character-window chunking.

Splits raw document text into bounded, optionally overlapping windows while
preserving:
    - Exact character offsets into the source text
    - Chunk position/index
    - The nearest markdown section header for context
"""

import bisect
import math
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from contentrag.errors import InvalidConfig

_HEADER_PATTERN = re.compile(r"^(#{1,6})\s+(.+)$", re.MULTILINE)


@dataclass(frozen=True)
class Chunk:
    """A contiguous slice of a document's text."""

    chunk_index: int
    """Zero-based ordinal position within the document."""

    start_offset: int
    """Inclusive character offset into the raw text."""

    end_offset: int
    """Exclusive character offset into the raw text."""

    content: str
    """The literal substring raw_text[start_offset:end_offset]."""

    section_header: str = ""
    """Nearest markdown header at or before start_offset."""

    @property
    def token_count(self) -> int:
        """Rough token estimate (four characters per token)."""
        return math.ceil(len(self.content) / 4)


def validate_chunking(chunk_size: int, overlap: int) -> None:
    """
    Check chunking parameters.

    Raises:
        InvalidConfig: If chunk_size <= 0, overlap < 0 or overlap >= chunk_size
    """
    if chunk_size <= 0:
        raise InvalidConfig(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0:
        raise InvalidConfig(f"overlap must be non-negative, got {overlap}")
    if overlap >= chunk_size:
        raise InvalidConfig(
            f"overlap ({overlap}) must be less than chunk_size ({chunk_size})"
        )


def iter_chunks(raw_text: str, chunk_size: int, overlap: int) -> Iterator[Chunk]:
    """
    Lazily split text into fixed-size character windows.

    Each chunk after the first starts at ``previous_end - overlap`` (never
    before ``previous_start + 1``) and the final chunk always ends at
    ``len(raw_text)``. Calling the function again restarts the sequence.

    Args:
        raw_text: Document text to chunk
        chunk_size: Maximum characters per chunk
        overlap: Characters shared between consecutive chunks

    Yields:
        Chunk objects in ascending chunk_index / start_offset order

    Raises:
        InvalidConfig: If the chunking parameters are invalid
    """
    # Validate eagerly so a bad config fails even for empty text
    validate_chunking(chunk_size, overlap)
    return _generate_chunks(raw_text, chunk_size, overlap)


def _generate_chunks(raw_text: str, chunk_size: int, overlap: int) -> Iterator[Chunk]:
    text_length = len(raw_text)
    if text_length == 0:
        return

    header_positions, header_texts = _extract_section_headers(raw_text)

    start = 0
    chunk_index = 0
    while True:
        end = min(start + chunk_size, text_length)
        yield Chunk(
            chunk_index=chunk_index,
            start_offset=start,
            end_offset=end,
            content=raw_text[start:end],
            section_header=_find_nearest_header(start, header_positions, header_texts),
        )
        if end == text_length:
            return
        start = max(end - overlap, start + 1)
        chunk_index += 1


def chunk_text(raw_text: str, chunk_size: int, overlap: int) -> list[Chunk]:
    """
    Split text into chunks eagerly.

    Args:
        raw_text: Document text to chunk
        chunk_size: Maximum characters per chunk
        overlap: Characters shared between consecutive chunks

    Returns:
        List of Chunk objects (empty for empty text)
    """
    return list(iter_chunks(raw_text, chunk_size, overlap))


def reconstruct_text(chunks: Iterable[Chunk]) -> str:
    """Concatenate chunk contents with the overlapping prefixes removed."""
    parts: list[str] = []
    covered_until = 0
    for chunk in chunks:
        skip = max(0, covered_until - chunk.start_offset)
        parts.append(chunk.content[skip:])
        covered_until = max(covered_until, chunk.end_offset)
    return "".join(parts)


def _extract_section_headers(text: str) -> tuple[list[int], list[str]]:
    """
    Extract markdown section headers from text.

    Returns:
        Parallel lists of header start positions (ascending) and header text
    """
    positions: list[int] = []
    headers: list[str] = []
    for match in _HEADER_PATTERN.finditer(text):
        positions.append(match.start())
        headers.append(match.group(2).strip())
    return positions, headers


def _find_nearest_header(offset: int, positions: list[int], headers: list[str]) -> str:
    """Return the last header starting at or before offset, or ''."""
    idx = bisect.bisect_right(positions, offset) - 1
    if idx < 0:
        return ""
    return headers[idx]

"""Text chunking service"""
import re
from typing import List, Optional

from pydantic import BaseModel

from app.config import settings

# Sentence terminator followed by whitespace or a line break
SENTENCE_END = re.compile(r"[.!?]\s+")

# How far past the naive cutoff to look for a sentence boundary
LOOKAHEAD_CHARS = 200
MIN_BREAK_RATIO = 0.7
MAX_BREAK_RATIO = 1.3


class TextChunk(BaseModel):
    """A segment of a larger text with its position in the source"""

    text: str
    index: int
    start_char: int
    end_char: int


class ChunkStats(BaseModel):
    """Aggregate metrics over a chunk set"""

    count: int = 0
    avg_size: int = 0
    min_size: int = 0
    max_size: int = 0
    total_chars: int = 0


class ChunkingService:
    """Service for splitting text into overlapping, sentence-aligned chunks"""

    def __init__(self, chunk_size: Optional[int] = None, chunk_overlap: Optional[int] = None):
        self.chunk_size = chunk_size if chunk_size is not None else settings.chunk_size
        self.chunk_overlap = (
            chunk_overlap if chunk_overlap is not None else settings.chunk_overlap
        )

    def chunk_text(
        self,
        text: str,
        chunk_size: Optional[int] = None,
        overlap: Optional[int] = None,
    ) -> List[TextChunk]:
        """
        Split text into overlapping chunks, preferring sentence boundaries

        Args:
            text: Full text to chunk
            chunk_size: Target chunk length in characters
            overlap: Characters shared between consecutive chunks

        Returns:
            Ordered list of chunks with contiguous indices starting at 0
        """
        chunk_size = self.chunk_size if chunk_size is None else chunk_size
        overlap = self.chunk_overlap if overlap is None else overlap

        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if overlap < 0 or overlap >= chunk_size:
            raise ValueError("overlap must be in [0, chunk_size)")

        if not text:
            return []

        text_length = len(text)
        if text_length <= chunk_size:
            return [TextChunk(text=text, index=0, start_char=0, end_char=text_length)]

        chunks = []
        start = 0
        chunk_index = 0

        while start < text_length:
            end = min(start + chunk_size, text_length)

            # Not the last window: try to end on a sentence
            if end < text_length:
                break_point = self._find_break_point(text, start, end, chunk_size)
                if break_point > start:
                    end = break_point

            segment = text[start:end].strip()
            if segment:
                chunks.append(
                    TextChunk(
                        text=segment, index=chunk_index, start_char=start, end_char=end
                    )
                )
                chunk_index += 1

            # Move to next chunk with overlap; a break shorter than the
            # overlap would rewind the window, so continue from the break
            next_start = end - overlap
            start = next_start if next_start > start else end
            if start >= text_length - overlap:
                break

        return chunks

    @staticmethod
    def _find_break_point(text: str, start: int, end: int, chunk_size: int) -> int:
        """Return the sentence boundary closest to the target size, or -1"""
        target = start + chunk_size
        lower = start + chunk_size * MIN_BREAK_RATIO
        upper = start + chunk_size * MAX_BREAK_RATIO

        best_break = -1
        best_distance = float("inf")
        window = text[start:end + LOOKAHEAD_CHARS]

        for match in SENTENCE_END.finditer(window):
            candidate = start + match.end()
            distance = abs(candidate - target)
            if lower < candidate <= upper and distance < best_distance:
                best_distance = distance
                best_break = candidate

        return best_break


def chunk_statistics(chunks: List[TextChunk]) -> ChunkStats:
    """Compute size statistics for a list of chunks"""
    if not chunks:
        return ChunkStats()

    sizes = [len(chunk.text) for chunk in chunks]
    total = sum(sizes)
    return ChunkStats(
        count=len(chunks),
        avg_size=round(total / len(chunks)),
        min_size=min(sizes),
        max_size=max(sizes),
        total_chars=total,
    )


# Singleton instance
chunking_service = ChunkingService()

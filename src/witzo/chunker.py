"""Overlapping word-window chunking for retrieval."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List

DEFAULT_WINDOW_WORDS = 500
DEFAULT_OVERLAP_WORDS = 75


@dataclass(slots=True)
class Chunk:
    """A bounded span of text plus its position in the source word stream."""

    text: str
    index: int
    start_word: int
    end_word: int

    @property
    def word_count(self) -> int:
        return self.end_word - self.start_word


def _resolve_window(window_size: int, overlap: int) -> tuple[int, int]:
    if window_size <= 0:
        window_size = DEFAULT_WINDOW_WORDS
    if overlap < 0 or overlap >= window_size:
        overlap = DEFAULT_OVERLAP_WORDS
        if overlap >= window_size:
            overlap = 0
    return window_size, overlap


def chunk_words(
    text: str,
    *,
    window_size: int = DEFAULT_WINDOW_WORDS,
    overlap: int = DEFAULT_OVERLAP_WORDS,
) -> List[Chunk]:
    """Split ``text`` into windows of ``window_size`` words advancing by ``window_size - overlap``.

    The final window holds whatever words remain and ends the sequence. An
    invalid overlap falls back to the default; empty input yields no chunks.
    """

    words = text.split()
    if not words:
        return []

    window_size, overlap = _resolve_window(window_size, overlap)
    step = window_size - overlap
    chunks: list[Chunk] = []
    start = 0
    while start < len(words):
        end = min(start + window_size, len(words))
        chunks.append(
            Chunk(
                text=" ".join(words[start:end]),
                index=len(chunks),
                start_word=start,
                end_word=end,
            )
        )
        if end == len(words):
            break
        start += step
    return chunks


def chunk_text(
    text: str,
    window_size: int = DEFAULT_WINDOW_WORDS,
    overlap: int = DEFAULT_OVERLAP_WORDS,
) -> List[str]:
    """Return only the chunk texts produced by :func:`chunk_words`."""

    return [chunk.text for chunk in chunk_words(text, window_size=window_size, overlap=overlap)]


__all__ = ["Chunk", "chunk_words", "chunk_text", "DEFAULT_WINDOW_WORDS", "DEFAULT_OVERLAP_WORDS"]

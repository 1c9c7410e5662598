from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .base import Chunked, emit_chunks, plan_cuts

@dataclass
class SizeChunker:
    """Size-bounded chunking with overlap, for plain text and code.

    Each chunk is at most max_chunk_size characters including the overlap it
    repeats from its predecessor.
    """
    max_chunk_size: int = 1500
    overlap: int = 150

    def __post_init__(self) -> None:
        if self.overlap < 0 or self.overlap * 2 >= self.max_chunk_size:
            raise ValueError(
                f"Invalid overlap: {self.overlap}. Must be between 0 and half of max_chunk_size."
            )

    @property
    def budget(self) -> int:
        return self.max_chunk_size - self.overlap

    def chunk(self, text: str, metadata: dict[str, Any] | None = None) -> list[Chunked]:
        metadata = metadata or {}
        if not text:
            return [Chunked(index=0, text="", start=0, metadata=dict(metadata))]
        if len(text) <= self.max_chunk_size:
            return [Chunked(index=0, text=text, start=0, metadata=dict(metadata))]

        pieces = plan_cuts(text, 0, len(text), self.budget)
        return emit_chunks(text, pieces, self.overlap, [dict(metadata) for _ in pieces])

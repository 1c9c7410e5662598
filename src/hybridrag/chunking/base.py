from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

# Preferred cut points, best first
BREAK_SEPARATORS = ("\n\n", "\n", " ")

@dataclass(frozen=True)
class Chunked:
    """An exact slice text[start:start+len(text)] of the chunked input.

    The first `overlap` characters repeat the tail of the previous chunk.
    """
    index: int
    text: str
    start: int
    overlap: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def end(self) -> int:
        return self.start + len(self.text)

class Chunker(Protocol):
    max_chunk_size: int
    overlap: int

    def chunk(self, text: str, metadata: dict[str, Any] | None = None) -> list[Chunked]:
        ...

def reconstruct(chunks: list[Chunked]) -> str:
    """Inverse of chunking: drop each chunk's leading overlap and concatenate."""
    if not chunks:
        return ""
    return chunks[0].text + "".join(c.text[c.overlap:] for c in chunks[1:])

def plan_cuts(text: str, start: int, end: int, budget: int) -> list[tuple[int, int]]:
    """Split text[start:end] into contiguous pieces no longer than budget.

    Cuts land after the latest paragraph break, line break or space that
    falls in the second half of the window; otherwise the cut is hard.
    """
    pieces: list[tuple[int, int]] = []
    pos = start
    while end - pos > budget:
        window = text[pos:pos + budget]
        cut = pos + budget
        for sep in BREAK_SEPARATORS:
            idx = window.rfind(sep)
            if idx >= budget * 0.5:
                cut = pos + idx + len(sep)
                break
        pieces.append((pos, cut))
        pos = cut
    pieces.append((pos, end))
    return pieces

def overlap_start(text: str, prev_start: int, start: int, overlap: int) -> int:
    """Where chunk text begins so that it repeats up to `overlap` chars.

    Moves forward to a word boundary when one exists inside the overlap.
    """
    cs = max(start - overlap, prev_start)
    if cs <= prev_start or text[cs - 1].isspace():
        return cs
    j = cs
    while j < start and not text[j - 1].isspace():
        j += 1
    return j if j < start else cs

def emit_chunks(
    text: str,
    pieces: list[tuple[int, int]],
    overlap: int,
    piece_metadata: list[dict[str, Any]],
) -> list[Chunked]:
    chunks: list[Chunked] = []
    for i, (s, e) in enumerate(pieces):
        cs = s
        if i > 0 and overlap > 0:
            cs = overlap_start(text, pieces[i - 1][0], s, overlap)
        chunks.append(Chunked(
            index=i,
            text=text[cs:e],
            start=cs,
            overlap=s - cs,
            metadata=piece_metadata[i],
        ))
    return chunks

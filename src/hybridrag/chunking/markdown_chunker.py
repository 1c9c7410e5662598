from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from .base import Chunked, emit_chunks, plan_cuts

HEADING_RE = re.compile(r"^ {0,3}(#{1,6})\s+(.*?)\s*#*\s*$")
FENCE_RE = re.compile(r"^ {0,3}(```|~~~)")

@dataclass
class MarkdownChunker:
    """Chunk markdown by headings, then by size.

    Supports:
    - Section boundaries at headings outside fenced code blocks
    - Merging small neighbouring sections up to min_chunk_size
    - Size-based splitting (paragraph, line, word) for oversized sections
    - Heading and level metadata on every chunk
    """

    max_chunk_size: int = 1500
    overlap: int = 150
    min_chunk_size: int = 300

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

        sections = self._merge_small(self._extract_sections(text))

        pieces: list[tuple[int, int]] = []
        piece_meta: list[dict[str, Any]] = []
        for start, end, heading, level in sections:
            for s, e in plan_cuts(text, start, end, self.budget):
                meta = dict(metadata)
                if heading is not None:
                    meta["heading"] = heading
                    meta["level"] = level
                pieces.append((s, e))
                piece_meta.append(meta)

        if len(pieces) == 1:
            return [Chunked(index=0, text=text, start=0, metadata=piece_meta[0])]
        return emit_chunks(text, pieces, self.overlap, piece_meta)

    def _extract_sections(self, text: str) -> list[tuple[int, int, str | None, int]]:
        """Return (start, end, heading, level) spans covering the whole text."""
        starts: list[tuple[int, str | None, int]] = [(0, None, 0)]
        in_fence = False
        fence_marker = ""
        offset = 0
        for line in text.splitlines(keepends=True):
            stripped = line.rstrip("\r\n")
            fm = FENCE_RE.match(stripped)
            if fm:
                if not in_fence:
                    in_fence, fence_marker = True, fm.group(1)
                elif fm.group(1) == fence_marker:
                    in_fence = False
            elif not in_fence:
                hm = HEADING_RE.match(stripped)
                if hm:
                    if offset == 0:
                        starts[0] = (0, hm.group(2), len(hm.group(1)))
                    else:
                        starts.append((offset, hm.group(2), len(hm.group(1))))
            offset += len(line)

        sections = []
        for i, (s, heading, level) in enumerate(starts):
            e = starts[i + 1][0] if i + 1 < len(starts) else len(text)
            if e > s:
                sections.append((s, e, heading, level))
        return sections

    def _merge_small(
        self, sections: list[tuple[int, int, str | None, int]]
    ) -> list[tuple[int, int, str | None, int]]:
        merged: list[tuple[int, int, str | None, int]] = []
        for s, e, heading, level in sections:
            if merged:
                ps, pe, ph, pl = merged[-1]
                if pe - ps < self.min_chunk_size and e - ps <= self.budget:
                    merged[-1] = (ps, e, ph, pl)
                    continue
            merged.append((s, e, heading, level))
        return merged

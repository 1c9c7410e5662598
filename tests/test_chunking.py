"""Tests for size-based and markdown-aware chunking."""
from __future__ import annotations

import pytest

from hybridrag.chunking import MarkdownChunker, SizeChunker, reconstruct


def _prose(words: int) -> str:
    vocab = ["alpha", "beta", "gamma", "delta", "epsilon", "zeta", "eta", "theta"]
    lines = []
    for i in range(words):
        lines.append(vocab[i % len(vocab)])
        if i % 12 == 11:
            lines.append(".\n")
    return " ".join(lines)


class TestSizeChunker:
    """Tests for SizeChunker."""

    def test_short_text_single_chunk(self):
        chunks = SizeChunker(max_chunk_size=200, overlap=20).chunk("hello world")
        assert len(chunks) == 1
        assert chunks[0].text == "hello world"
        assert chunks[0].overlap == 0

    def test_empty_text_yields_one_empty_chunk(self):
        chunks = SizeChunker(max_chunk_size=200, overlap=20).chunk("")
        assert len(chunks) == 1
        assert chunks[0].text == ""

    def test_size_bound_includes_overlap(self):
        """No chunk exceeds max_chunk_size, overlap included."""
        chunker = SizeChunker(max_chunk_size=200, overlap=40)
        chunks = chunker.chunk(_prose(600))
        assert len(chunks) > 1
        assert all(len(c.text) <= 200 for c in chunks)

    def test_reconstruct_returns_original(self):
        """Dropping each chunk's overlap and concatenating restores the input."""
        text = _prose(800)
        chunks = SizeChunker(max_chunk_size=250, overlap=50).chunk(text)
        assert reconstruct(chunks) == text

    def test_reconstruct_without_break_points(self):
        """Text with no whitespace is hard-cut and still reconstructs."""
        text = "x" * 1000
        chunks = SizeChunker(max_chunk_size=200, overlap=30).chunk(text)
        assert all(len(c.text) <= 200 for c in chunks)
        assert reconstruct(chunks) == text

    def test_chunks_are_exact_slices(self):
        text = _prose(500)
        for c in SizeChunker(max_chunk_size=180, overlap=30).chunk(text):
            assert text[c.start:c.end] == c.text

    def test_overlap_repeats_previous_tail(self):
        text = _prose(500)
        chunks = SizeChunker(max_chunk_size=180, overlap=30).chunk(text)
        for prev, cur in zip(chunks, chunks[1:]):
            assert 0 < cur.overlap <= 30
            assert prev.text.endswith(cur.text[:cur.overlap])

    def test_deterministic(self):
        text = _prose(400)
        a = SizeChunker(max_chunk_size=150, overlap=20).chunk(text)
        b = SizeChunker(max_chunk_size=150, overlap=20).chunk(text)
        assert [(c.start, c.text) for c in a] == [(c.start, c.text) for c in b]

    def test_prefers_paragraph_breaks(self):
        para = "word " * 30
        text = para.strip() + "\n\n" + para.strip() + "\n\n" + para.strip()
        chunks = SizeChunker(max_chunk_size=200, overlap=0).chunk(text)
        assert chunks[0].text.endswith("\n\n")

    def test_invalid_overlap(self):
        with pytest.raises(ValueError, match="Invalid overlap"):
            SizeChunker(max_chunk_size=100, overlap=50)

    def test_metadata_copied_to_every_chunk(self):
        chunks = SizeChunker(max_chunk_size=150, overlap=20).chunk(_prose(200), {"lang": "txt"})
        assert all(c.metadata == {"lang": "txt"} for c in chunks)


class TestMarkdownChunker:
    """Tests for MarkdownChunker."""

    def test_splits_on_headings(self):
        text = "# Intro\n" + ("intro text " * 20) + "\n## Usage\n" + ("usage text " * 20) + "\n"
        chunks = MarkdownChunker(max_chunk_size=400, overlap=0, min_chunk_size=50).chunk(text)
        assert [c.metadata.get("heading") for c in chunks] == ["Intro", "Usage"]
        assert [c.metadata.get("level") for c in chunks] == [1, 2]

    def test_heading_inside_code_fence_ignored(self):
        text = "# Real\n```\n# not a heading\n```\n" + ("body " * 30)
        chunks = MarkdownChunker(max_chunk_size=400, overlap=0, min_chunk_size=0).chunk(text)
        assert len(chunks) == 1
        assert chunks[0].metadata["heading"] == "Real"

    def test_small_sections_merged(self):
        text = "# A\nshort\n# B\nshort\n# C\nshort\n"
        chunks = MarkdownChunker(max_chunk_size=400, overlap=0, min_chunk_size=100).chunk(text)
        assert len(chunks) == 1
        assert chunks[0].text == text

    def test_large_section_split_by_size(self):
        text = "# Big\n" + _prose(600)
        chunks = MarkdownChunker(max_chunk_size=200, overlap=30, min_chunk_size=50).chunk(text)
        assert len(chunks) > 1
        assert all(len(c.text) <= 200 for c in chunks)
        assert all(c.metadata["heading"] == "Big" for c in chunks)

    def test_reconstruct_returns_original(self):
        text = "Preamble line\n\n# One\n" + _prose(300) + "\n## Two\n" + _prose(200) + "\n```\ncode\n```\n"
        chunks = MarkdownChunker(max_chunk_size=250, overlap=40, min_chunk_size=60).chunk(text)
        assert reconstruct(chunks) == text

    def test_empty_text(self):
        chunks = MarkdownChunker().chunk("")
        assert len(chunks) == 1
        assert chunks[0].text == ""

    def test_indices_are_sequential(self):
        chunks = MarkdownChunker(max_chunk_size=200, overlap=20, min_chunk_size=0).chunk("# A\n" + _prose(400))
        assert [c.index for c in chunks] == list(range(len(chunks)))

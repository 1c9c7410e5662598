from .base import Chunked, Chunker, reconstruct
from .markdown_chunker import MarkdownChunker
from .text_chunker import SizeChunker

__all__ = ["Chunked", "Chunker", "MarkdownChunker", "SizeChunker", "reconstruct"]

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, Any

from ..models import SourceType

@dataclass(frozen=True)
class ExtractedPage:
    text: str
    page_number: int | None = None

@dataclass(frozen=True)
class Extracted:
    pages: list[ExtractedPage]
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return "\n\n".join(p.text for p in self.pages)

class Extractor(Protocol):
    supported_suffixes: tuple[str, ...]
    source_type: SourceType

    def extract(self, path: Path) -> Extracted:
        ...

class VisionTextExtractor(Protocol):
    """Remote capability that reads the text out of an image.

    Raises ProviderError subclasses (RateLimitedError, UnavailableError,
    InvalidInputError) or UnsupportedContentError for unknown formats.
    """

    model: str

    def extract(self, image_bytes: bytes, mime_type: str) -> str:
        ...

class ExtractorRegistry:
    def __init__(self) -> None:
        self._by_suffix: dict[str, Extractor] = {}

    def register(self, extractor: Extractor) -> None:
        for s in extractor.supported_suffixes:
            self._by_suffix[s.lower()] = extractor

    def get(self, path: Path) -> Extractor | None:
        return self._by_suffix.get(path.suffix.lower())

    def suffixes(self) -> list[str]:
        return sorted(self._by_suffix)

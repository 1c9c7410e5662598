from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .base import Extracted, ExtractedPage
from ..config import TEXT_EXTENSIONS
from ..models import SourceType
from ..utils import read_utf8

@dataclass
class TextExtractor:
    """Plain text and source code, read as strict UTF-8."""
    supported_suffixes = tuple(f".{e}" for e in TEXT_EXTENSIONS)
    source_type = SourceType.FILE

    def extract(self, path: Path) -> Extracted:
        text = read_utf8(path)
        meta: dict[str, Any] = {
            "language": path.suffix.lower().lstrip("."),
            "markdown": path.suffix.lower() == ".md",
        }
        return Extracted(pages=[ExtractedPage(text=text)], metadata=meta)

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Any
import logging

import pdfplumber

from .base import Extracted, ExtractedPage, VisionTextExtractor
from .image import NO_TEXT_MARKER
from ..errors import CorruptContentError, ExtractionError, ProviderError
from ..models import SourceType

logger = logging.getLogger(__name__)


@dataclass
class PdfExtractor:
    """Page-aware PDF extraction.

    Every page yields one ExtractedPage, numbered from 1. Pages without a
    text layer (scans) yield "" instead of failing the document. With
    empty_page_strategy="vision" such pages are rendered and sent through
    the vision extractor; a vision failure leaves the page empty.
    """
    supported_suffixes = (".pdf",)
    source_type = SourceType.PDF
    vision: VisionTextExtractor | None = None
    empty_page_strategy: str = "keep"  # keep|vision
    render_resolution: int = 150

    def extract(self, path: Path) -> Extracted:
        pages: list[ExtractedPage] = []
        empty_pages: list[int] = []
        vision_pages: list[int] = []

        try:
            pdf = pdfplumber.open(str(path))
        except Exception as e:
            raise CorruptContentError(f"Cannot open PDF {path}: {e}") from e

        with pdf:
            try:
                for i, page in enumerate(pdf.pages, start=1):
                    t = page.extract_text() or ""
                    if not t.strip():
                        empty_pages.append(i)
                        t = self._vision_fallback(page, i, path)
                        if t:
                            vision_pages.append(i)
                    pages.append(ExtractedPage(text=t, page_number=i))
            except ExtractionError:
                raise
            except Exception as e:
                raise CorruptContentError(f"Failed reading PDF {path}: {e}") from e

        if not pages:
            # A PDF without pages still counts as one empty page
            pages.append(ExtractedPage(text="", page_number=1))
            empty_pages.append(1)

        if empty_pages:
            logger.debug(f"{path.name}: {len(empty_pages)} page(s) without a text layer: {empty_pages}")

        meta: dict[str, Any] = {
            "page_count": len(pages),
            "empty_pages": empty_pages,
            "vision_pages": vision_pages,
        }
        return Extracted(pages=pages, metadata=meta)

    def _vision_fallback(self, page: Any, page_number: int, path: Path) -> str:
        if self.empty_page_strategy != "vision" or self.vision is None:
            return ""
        try:
            rendered = page.to_image(resolution=self.render_resolution).original
            buf = BytesIO()
            rendered.save(buf, format="PNG")
            text = self.vision.extract(buf.getvalue(), "image/png").strip()
        except (ProviderError, ExtractionError) as e:
            logger.warning(f"Vision fallback failed for {path.name} page {page_number}: {e}")
            return ""
        return "" if text == NO_TEXT_MARKER else text

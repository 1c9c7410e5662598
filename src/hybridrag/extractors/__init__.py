from .base import Extracted, ExtractedPage, Extractor, ExtractorRegistry, VisionTextExtractor
from .image import GeminiVisionExtractor, ImageExtractor, ResilientVision
from .pdf import PdfExtractor
from .text import TextExtractor
from .url import UrlExtractor

__all__ = [
    "Extracted",
    "ExtractedPage",
    "Extractor",
    "ExtractorRegistry",
    "GeminiVisionExtractor",
    "ImageExtractor",
    "PdfExtractor",
    "ResilientVision",
    "TextExtractor",
    "UrlExtractor",
    "VisionTextExtractor",
]

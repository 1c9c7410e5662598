from __future__ import annotations

from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Any
import logging
import os

from PIL import Image, UnidentifiedImageError

from .base import Extracted, ExtractedPage, VisionTextExtractor
from ..config import IMAGE_EXTENSIONS
from ..errors import ConfigurationError, CorruptContentError, UnsupportedContentError
from ..models import SourceType
from ..resilience import RetryPolicy, to_provider_error

logger = logging.getLogger(__name__)

NO_TEXT_MARKER = "[no text in image]"

EXTRACTION_PROMPT = f"""Extract all text from this image.

Rules:
1. Transcribe every piece of visible text exactly as written.
2. Preserve the structure: headings, lists, tables and code blocks.
3. Output valid Markdown only, with no commentary before or after it.
4. Describe diagrams or charts briefly in Markdown if they carry information.
5. If the image contains no text at all, respond with exactly: {NO_TEXT_MARKER}"""

# Formats the vision API accepts directly; anything else is re-encoded as PNG
VISION_MIME_TYPES = ("image/png", "image/jpeg", "image/webp")


def _image_info(image_bytes: bytes, source: str) -> tuple[int, int, str]:
    """Return (width, height, mime_type), validating that Pillow can decode it."""
    try:
        with Image.open(BytesIO(image_bytes)) as img:
            img.verify()
        with Image.open(BytesIO(image_bytes)) as img:
            w, h = img.size
            fmt = img.format or ""
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise CorruptContentError(f"Unreadable image {source}: {e}") from e
    mime = Image.MIME.get(fmt.upper())
    if mime is None:
        raise UnsupportedContentError(f"Unsupported image format {fmt or 'unknown'}: {source}")
    return w, h, mime


def to_png(image_bytes: bytes) -> bytes:
    with Image.open(BytesIO(image_bytes)) as img:
        buf = BytesIO()
        img.convert("RGBA" if "A" in img.getbands() else "RGB").save(buf, format="PNG")
        return buf.getvalue()


@dataclass
class ImageExtractor:
    """Images are read through the injected vision capability."""
    vision: VisionTextExtractor
    supported_suffixes = tuple(f".{e}" for e in IMAGE_EXTENSIONS)
    source_type = SourceType.IMAGE

    def extract(self, path: Path) -> Extracted:
        image_bytes = path.read_bytes()
        w, h, mime = _image_info(image_bytes, str(path))
        if mime not in VISION_MIME_TYPES:
            logger.debug(f"Re-encoding {path.name} ({mime}) as PNG for vision extraction")
            image_bytes = to_png(image_bytes)
            mime = "image/png"

        text = self.vision.extract(image_bytes, mime).strip()
        if text == NO_TEXT_MARKER:
            text = ""

        meta: dict[str, Any] = {
            "width": w,
            "height": h,
            "mime_type": mime,
            "analysis_model": self.vision.model,
        }
        return Extracted(pages=[ExtractedPage(text=text)], metadata=meta)


@dataclass
class GeminiVisionExtractor:
    """VisionTextExtractor backed by a Gemini multimodal model."""
    api_key: str | None = None
    model: str = "gemini-2.0-flash"
    temperature: float = 0.1
    max_output_tokens: int = 8192
    timeout_s: float = 60.0
    _client: Any = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
        # Try to get API key from environment if not provided
        if self.api_key is None:
            self.api_key = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
        if not self.api_key:
            raise ConfigurationError(
                "No Gemini API key found. Set GEMINI_API_KEY or GOOGLE_API_KEY, "
                "or [embeddings].api_key in config.toml."
            )

        from google import genai  # type: ignore
        from google.genai import types  # type: ignore

        self._client = genai.Client(
            api_key=self.api_key,
            http_options=types.HttpOptions(timeout=int(self.timeout_s * 1000)),
        )

    def extract(self, image_bytes: bytes, mime_type: str) -> str:
        if mime_type not in VISION_MIME_TYPES:
            raise UnsupportedContentError(f"Vision model does not accept {mime_type}")

        from google.genai import types  # type: ignore

        try:
            response = self._client.models.generate_content(
                model=self.model,
                contents=[
                    types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
                    EXTRACTION_PROMPT,
                ],  # type: ignore[arg-type]
                config=types.GenerateContentConfig(
                    temperature=self.temperature,
                    max_output_tokens=self.max_output_tokens,
                ),
            )
        except Exception as e:
            raise to_provider_error(e, provider="gemini-vision") from e

        text = (response.text or "").strip()
        # Remove markdown code fence wrapping the whole answer
        if text.startswith("```") and text.endswith("```"):
            lines = text.split("\n")
            text = "\n".join(lines[1:-1]).strip()
        return text


@dataclass
class ResilientVision:
    """Wraps a VisionTextExtractor with bounded retries on rate/5xx errors."""
    inner: VisionTextExtractor
    policy: RetryPolicy = field(default_factory=lambda: RetryPolicy(provider="vision"))

    @property
    def model(self) -> str:
        return self.inner.model

    def extract(self, image_bytes: bytes, mime_type: str) -> str:
        return self.policy.call(self.inner.extract, image_bytes, mime_type, source=mime_type)

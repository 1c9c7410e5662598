from __future__ import annotations

import html as html_lib
import logging
import re
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse

import requests
import trafilatura

from .base import Extracted, ExtractedPage
from ..errors import FetchError, InvalidSource, UnsupportedContentError

logger = logging.getLogger(__name__)

TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
H1_RE = re.compile(r"<h1[^>]*>(.*?)</h1>", re.IGNORECASE | re.DOTALL)
TAG_RE = re.compile(r"<[^>]+>")


def validate_url(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise InvalidSource(f"URL scheme '{parsed.scheme}' is not allowed: {url}")
    if not parsed.netloc:
        raise InvalidSource(f"URL must include a host: {url}")
    return parsed.geturl()


def _clean(fragment: str) -> str:
    return " ".join(html_lib.unescape(TAG_RE.sub(" ", fragment)).split())


def extract_title(html: str) -> str | None:
    meta = trafilatura.extract_metadata(html)
    if meta is not None and meta.title:
        return meta.title.strip()
    for rx in (TITLE_RE, H1_RE):
        m = rx.search(html)
        if m and _clean(m.group(1)):
            return _clean(m.group(1))
    return None


@dataclass
class UrlExtractor:
    """Fetch a web page and keep its main content."""
    timeout_s: float = 30.0
    user_agent: str = "hybridrag/0.1"
    include_tables: bool = True

    def fetch(self, url: str) -> tuple[str, str]:
        """Return (final_url, html)."""
        url = validate_url(url)
        try:
            response = requests.get(url, timeout=self.timeout_s, headers={"User-Agent": self.user_agent})
            response.raise_for_status()
        except requests.RequestException as exc:
            raise FetchError(f"Failed to fetch {url}: {exc}") from exc
        return response.url or url, response.text

    def extract(self, url: str) -> Extracted:
        final_url, html = self.fetch(url)

        content = trafilatura.extract(html, include_comments=False, include_tables=self.include_tables)
        if not content or not content.strip():
            raise UnsupportedContentError(f"No extractable content at {url}")
        content = content.strip()

        title = extract_title(html)
        text = f"# {title}\n\n{content}" if title else content
        logger.debug(f"Fetched {final_url}: {len(content)} chars, title={title!r}")

        meta: dict[str, Any] = {"title": title, "final_url": final_url, "markdown": True}
        return Extracted(pages=[ExtractedPage(text=text)], metadata=meta)

"""Shared fixtures: an in-process embedder and vision model, no network."""
from __future__ import annotations

import re
from pathlib import Path
from unittest.mock import Mock

import numpy as np
import pytest
from PIL import Image

from hybridrag.config import EngineConfig
from hybridrag.embeddings.rate_limit import RateBudget
from hybridrag.embeddings.rate_limited import RateLimitedEmbedder
from hybridrag.hashing import blake2b_hex
from hybridrag.indexer.ingestor import Ingestor
from hybridrag.store.sqlite_store import DualIndexStore

WORD_RE = re.compile(r"\w+")


class FakeEmbedder:
    """Bag-of-words hashing embedder: texts sharing words have high cosine similarity."""

    def __init__(self, dims: int = 64, model_id: str = "fake-embed", fail_on: str | None = None,
                 error: Exception | None = None):
        self.dims = dims
        self.model_id = model_id
        self.fail_on = fail_on
        self.error = error
        self.calls: list[str] = []

    def _vec(self, text: str) -> np.ndarray:
        v = np.zeros(self.dims, dtype=np.float32)
        for w in WORD_RE.findall(text.lower()):
            v[int(blake2b_hex(w.encode("utf-8"))[:8], 16) % self.dims] += 1.0
        n = float(np.linalg.norm(v))
        return v / n if n > 0 else v

    def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if self.fail_on is not None and self.fail_on in text:
            raise self.error or ValueError("400 Bad Request")
        return self._vec(text)

    def embed_query(self, text: str) -> np.ndarray:
        self.calls.append(text)
        return self._vec(text)


class FakeVision:
    """Returns a canned transcription and records every call."""

    model = "fake-vision"

    def __init__(self, text: str = "Text read from the image"):
        self.text = text
        self.calls: list[tuple[int, str]] = []

    def extract(self, image_bytes: bytes, mime_type: str) -> str:
        self.calls.append((len(image_bytes), mime_type))
        return self.text


def make_embedder(inner: FakeEmbedder | None = None, max_retries: int = 0) -> RateLimitedEmbedder:
    return RateLimitedEmbedder(
        embedder=inner or FakeEmbedder(),
        budget=RateBudget(requests_per_minute=10000, min_interval_s=0.0),
        max_retries=max_retries,
        backoff_base_s=0.0,
        jitter=0.0,
        sleep=lambda s: None,
    )


@pytest.fixture
def cfg(tmp_path: Path) -> EngineConfig:
    return EngineConfig(
        data_dir=tmp_path / "data",
        vision_provider="off",
        workers=2,
        max_chunk_size=400,
        overlap=40,
        min_chunk_size=50,
        min_interval_ms=0,
    )


@pytest.fixture
def store(tmp_path: Path) -> DualIndexStore:
    s = DualIndexStore(tmp_path / "test.db")
    s.init()
    yield s
    s.close()


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def embedder(fake_embedder: FakeEmbedder) -> RateLimitedEmbedder:
    return make_embedder(fake_embedder)


@pytest.fixture
def ingestor(cfg: EngineConfig, store: DualIndexStore, embedder: RateLimitedEmbedder) -> Ingestor:
    return Ingestor(cfg, store=store, embedder=embedder)


class FakePage:
    """pdfplumber page stand-in; text None means no text layer."""

    def __init__(self, text: str | None):
        self.text = text

    def extract_text(self):
        return self.text

    def to_image(self, resolution: int = 72):
        return Mock(original=Image.new("RGB", (10, 10), color="white"))


class FakePdf:
    def __init__(self, texts: list[str | None]):
        self.pages = [FakePage(t) for t in texts]
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True
        return False

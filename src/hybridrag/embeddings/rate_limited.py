from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Sequence

import numpy as np

from .base import TextEmbedder
from .rate_limit import RateBudget
from ..errors import EmbeddingFailedError, ProviderError
from ..resilience import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingOutcome:
    """Per-item result of a batch: exactly one of vector or error is set."""

    vector: np.ndarray | None = None
    error: EmbeddingFailedError | None = None

    @property
    def ok(self) -> bool:
        return self.vector is not None


@dataclass
class RateLimitedEmbedder:
    """TextEmbedder front-end that enforces the shared rate budget.

    Every remote attempt, retries included, takes a slot from `budget`.
    Throttling and transient failures are retried with exponential backoff
    and jitter; invalid input fails at once. Whitespace-only text maps to the
    zero vector without a remote call.
    """

    embedder: TextEmbedder
    budget: RateBudget
    max_retries: int = 3
    backoff_base_s: float = 2.0
    jitter: float = 0.25
    sleep: Callable[[float], None] = time.sleep
    rng: random.Random | None = None

    _policy: RetryPolicy = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._policy = RetryPolicy(
            max_retries=self.max_retries,
            backoff_base_s=self.backoff_base_s,
            jitter=self.jitter,
            provider=f"embed:{self.embedder.model_id}",
            sleep=self.sleep,
            rng=self.rng,
        )

    @property
    def model_id(self) -> str:
        return self.embedder.model_id

    @property
    def dims(self) -> int:
        return self.embedder.dims

    def embed(self, text: str) -> np.ndarray:
        """Embed one document chunk; raises EmbeddingFailedError on terminal failure."""
        return self._call(self.embedder.embed, text)

    def embed_query(self, text: str) -> np.ndarray:
        return self._call(self.embedder.embed_query, text)

    def embed_many(self, texts: Sequence[str]) -> list[EmbeddingOutcome]:
        """Embed a batch; one failing item never stops the others."""
        outcomes: list[EmbeddingOutcome] = []
        for i, text in enumerate(texts):
            try:
                outcomes.append(EmbeddingOutcome(vector=self.embed(text)))
            except EmbeddingFailedError as e:
                logger.warning(f"Embedding failed for item {i} ({len(text)} chars): {e}")
                outcomes.append(EmbeddingOutcome(error=e))
        return outcomes

    def _call(self, fn: Callable[[str], np.ndarray], text: str) -> np.ndarray:
        if not text.strip():
            return np.zeros(self.dims, dtype=np.float32)
        try:
            vec = self._policy.call(fn, text, before_attempt=self.budget.acquire, source=f"{len(text)} chars")
        except ProviderError as e:
            raise EmbeddingFailedError(f"Embedding failed: {e}", cause=e) from e
        return np.asarray(vec, dtype=np.float32)

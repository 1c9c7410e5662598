from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
import logging
import os

import numpy as np

from ..errors import ConfigurationError, InvalidInputError
from ..resilience import to_provider_error

logger = logging.getLogger(__name__)

@dataclass
class GeminiEmbedder:
    """Gemini embedding model via google-genai.

    Documents and queries use different task types so the model can produce
    asymmetric retrieval embeddings.
    """
    model_id: str = "gemini-embedding-001"
    dims: int = 768
    api_key: str | None = None
    timeout_s: float = 30.0
    document_task_type: str = "RETRIEVAL_DOCUMENT"
    query_task_type: str = "RETRIEVAL_QUERY"
    _client: Any = field(init=False, default=None, repr=False)

    def __post_init__(self) -> None:
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

    def embed(self, text: str) -> np.ndarray:
        """Embed a document chunk."""
        return self._embed(text, self.document_task_type)

    def embed_query(self, text: str) -> np.ndarray:
        return self._embed(text, self.query_task_type)

    def _embed(self, text: str, task_type: str) -> np.ndarray:
        if not text.strip():
            return np.zeros(self.dims, dtype=np.float32)

        from google.genai import types  # type: ignore

        try:
            result = self._client.models.embed_content(
                model=self.model_id,
                contents=text,
                config=types.EmbedContentConfig(
                    task_type=task_type,
                    output_dimensionality=self.dims,
                ),
            )
        except Exception as e:
            raise to_provider_error(e, provider="gemini-embed") from e

        if not result.embeddings or result.embeddings[0].values is None:
            raise InvalidInputError(f"[gemini-embed] Empty embedding response for {len(text)} chars")

        vec = np.asarray(result.embeddings[0].values, dtype=np.float32)
        if vec.size != self.dims:
            raise InvalidInputError(f"[gemini-embed] Expected {self.dims} dims, got {vec.size}")
        # Truncated (Matryoshka) outputs are not unit length
        norm = float(np.linalg.norm(vec))
        return vec / norm if norm > 0 else vec

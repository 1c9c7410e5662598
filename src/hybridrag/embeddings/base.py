from __future__ import annotations

from typing import Protocol
import numpy as np

class TextEmbedder(Protocol):
    """Remote or local capability that maps text to a fixed-dimension vector.

    Implementations raise ProviderError subclasses on failure.
    """

    model_id: str
    dims: int

    def embed(self, text: str) -> np.ndarray:
        ...

    def embed_query(self, text: str) -> np.ndarray:
        ...

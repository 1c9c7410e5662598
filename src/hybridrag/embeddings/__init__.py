from __future__ import annotations

from ..config import EngineConfig
from .base import TextEmbedder
from .gemini import GeminiEmbedder
from .rate_limit import RateBudget
from .rate_limited import EmbeddingOutcome, RateLimitedEmbedder

def create_embedder(cfg: EngineConfig) -> TextEmbedder:
    """Build the configured remote embedder."""
    if cfg.embedding_provider == "gemini":
        return GeminiEmbedder(
            model_id=cfg.embedding_model,
            dims=cfg.embedding_dimensions,
            api_key=cfg.api_key,
            timeout_s=cfg.embedding_timeout_s,
        )
    raise ValueError(f"Unknown embedding provider: {cfg.embedding_provider}")

def create_rate_budget(cfg: EngineConfig) -> RateBudget:
    return RateBudget(
        requests_per_minute=cfg.requests_per_minute,
        min_interval_s=cfg.min_interval_ms / 1000.0,
    )

def rate_limited(cfg: EngineConfig, embedder: TextEmbedder, budget: RateBudget) -> RateLimitedEmbedder:
    return RateLimitedEmbedder(
        embedder=embedder,
        budget=budget,
        max_retries=cfg.max_retries,
        backoff_base_s=cfg.backoff_base_ms / 1000.0,
        jitter=cfg.jitter,
    )

__all__ = [
    "EmbeddingOutcome",
    "GeminiEmbedder",
    "RateBudget",
    "RateLimitedEmbedder",
    "TextEmbedder",
    "create_embedder",
    "create_rate_budget",
    "rate_limited",
]

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

from ..config import EngineConfig
from ..errors import ConfigurationError
from ..embeddings import RateLimitedEmbedder, create_embedder, create_rate_budget, rate_limited
from ..models import QueryResult, SearchFilters, SearchHit
from ..store.sqlite_store import DualIndexStore
from .hybrid import HybridRanker

logger = logging.getLogger(__name__)

SEARCH_MODES = ("hybrid", "vector", "keyword")


@dataclass
class HybridRetriever:
    """Run vector and keyword search over the same store and fuse with RRF.

    embedder may be None for keyword-only use.
    Both sub-searches see the same metadata pre-filter and fetch
    k * candidate_multiplier candidates. They run concurrently; the fused
    ordering depends only on the returned ranks.
    """

    store: DualIndexStore
    embedder: Optional[RateLimitedEmbedder]
    rrf_k: int = 60
    candidate_multiplier: int = 2

    ranker: HybridRanker = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.candidate_multiplier < 1:
            raise ValueError(f"Invalid candidate_multiplier: {self.candidate_multiplier}. Must be >= 1.")
        self.ranker = HybridRanker(rrf_k=self.rrf_k)

    @classmethod
    def from_config(cls, cfg: EngineConfig, store: Optional[DualIndexStore] = None) -> "HybridRetriever":
        if store is None:
            store = DualIndexStore(cfg.db_path)
            store.init()
        embedder = rate_limited(cfg, create_embedder(cfg), create_rate_budget(cfg))
        return cls(store=store, embedder=embedder, rrf_k=cfg.rrf_k, candidate_multiplier=cfg.candidate_multiplier)

    def search(
        self,
        query: str,
        k: int = 5,
        filters: Optional[SearchFilters] = None,
        mode: str = "hybrid",
    ) -> QueryResult:
        """Return up to k SearchHits, best first.

        An empty or whitespace query, or k <= 0, returns an empty result
        without touching the embedder. Raises EmbeddingFailedError when the
        query cannot be embedded in a mode that needs it.
        """
        if mode not in SEARCH_MODES:
            raise ValueError(f"Invalid search mode: {mode}. Must be one of: {', '.join(SEARCH_MODES)}.")
        if k <= 0 or not query.strip():
            return []

        candidates = k * self.candidate_multiplier
        vector_ids: list[str] = []
        keyword_ids: list[str] = []

        if mode == "hybrid":
            with ThreadPoolExecutor(max_workers=2) as executor:
                vec_future = executor.submit(self._vector_ids, query, candidates, filters)
                kw_future = executor.submit(self._keyword_ids, query, candidates, filters)
                vector_ids = vec_future.result()
                keyword_ids = kw_future.result()
        elif mode == "vector":
            vector_ids = self._vector_ids(query, candidates, filters)
        else:
            keyword_ids = self._keyword_ids(query, candidates, filters)

        fused = self.ranker.merge(vector_ids, keyword_ids, k)
        docs = self.store.get_many([h.id for h in fused])
        logger.debug(
            f"Query {query!r} ({mode}): {len(vector_ids)} vector, {len(keyword_ids)} keyword, "
            f"{len(fused)} fused"
        )

        hits: QueryResult = []
        for h in fused:
            doc = docs.get(h.id)
            if doc is None:
                # Deleted between search and fetch
                continue
            hits.append(SearchHit(
                document=doc,
                score=h.score,
                rank=len(hits) + 1,
                vector_rank=h.vector_rank,
                keyword_rank=h.keyword_rank,
            ))
        return hits

    def _vector_ids(self, query: str, k: int, filters: Optional[SearchFilters]) -> list[str]:
        if self.embedder is None:
            raise ConfigurationError("Vector search needs an embedder; use keyword mode without one")
        qv = self.embedder.embed_query(query)
        return [doc_id for doc_id, _ in self.store.vector_search(qv, k=k, filters=filters)]

    def _keyword_ids(self, query: str, k: int, filters: Optional[SearchFilters]) -> list[str]:
        return [doc_id for doc_id, _ in self.store.keyword_search(query, k=k, filters=filters)]

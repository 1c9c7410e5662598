from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence


@dataclass(frozen=True)
class FusedHit:
    id: str
    score: float
    vector_rank: Optional[int] = None
    keyword_rank: Optional[int] = None

    @property
    def best_rank(self) -> int:
        ranks = [r for r in (self.vector_rank, self.keyword_rank) if r is not None]
        return min(ranks)


@dataclass
class HybridRanker:
    """Merge vector and keyword result lists with Reciprocal Rank Fusion.

    RRF Formula: score = sum(1 / (rrf_k + rank)) over the lists an id appears
    in, with 1-based ranks. Only positions matter, so the cosine and bm25
    scales never have to be reconciled. An id found by both searches always
    gets both contributions.

    Ordering is fully deterministic: score descending, then the better of
    the two individual ranks, then id.

    Reference: Cormack, Clarke, Buettcher (2009) "Reciprocal Rank Fusion
    outperforms Condorcet and individual Rank Learning Methods"
    """

    rrf_k: int = 60

    def __post_init__(self) -> None:
        if self.rrf_k < 1:
            raise ValueError(f"Invalid rrf_k: {self.rrf_k}. Must be >= 1.")

    def merge(self, vector_ids: Sequence[str], keyword_ids: Sequence[str], k: int) -> list[FusedHit]:
        """Fuse two best-first id lists and return the top k."""
        vec_rank: dict[str, int] = {}
        for rank, doc_id in enumerate(vector_ids, start=1):
            vec_rank.setdefault(doc_id, rank)
        kw_rank: dict[str, int] = {}
        for rank, doc_id in enumerate(keyword_ids, start=1):
            kw_rank.setdefault(doc_id, rank)

        hits = []
        for doc_id in set(vec_rank) | set(kw_rank):
            vr = vec_rank.get(doc_id)
            kr = kw_rank.get(doc_id)
            score = 0.0
            if vr is not None:
                score += 1.0 / (self.rrf_k + vr)
            if kr is not None:
                score += 1.0 / (self.rrf_k + kr)
            hits.append(FusedHit(id=doc_id, score=score, vector_rank=vr, keyword_rank=kr))

        hits.sort(key=lambda h: (-h.score, h.best_rank, h.id))
        return hits[:max(k, 0)]


def rrf_fuse(
    vector_ids: Sequence[str], keyword_ids: Sequence[str], k: int, rrf_k: int = 60
) -> list[FusedHit]:
    return HybridRanker(rrf_k=rrf_k).merge(vector_ids, keyword_ids, k)

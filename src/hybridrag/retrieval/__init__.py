from .hybrid import FusedHit, HybridRanker, rrf_fuse
from .retriever import SEARCH_MODES, HybridRetriever

__all__ = ["FusedHit", "HybridRanker", "HybridRetriever", "SEARCH_MODES", "rrf_fuse"]

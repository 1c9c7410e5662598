"""hybridrag: local, serverless hybrid retrieval.

Ingests files, PDFs, images, web pages and free text into a single SQLite
file holding a vector index and an FTS5 keyword index, and answers queries
by fusing both with Reciprocal Rank Fusion.

Public API:
- EngineConfig
- Ingestor
- HybridRetriever
"""

from .config import EngineConfig, load_config
from .indexer.ingestor import Ingestor
from .models import SearchFilters, SearchHit, SourceType
from .retrieval.retriever import HybridRetriever
from .store.sqlite_store import DualIndexStore

__all__ = [
    "DualIndexStore",
    "EngineConfig",
    "HybridRetriever",
    "Ingestor",
    "SearchFilters",
    "SearchHit",
    "SourceType",
    "load_config",
]

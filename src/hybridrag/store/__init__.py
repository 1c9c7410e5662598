from .sqlite_store import DualIndexStore, fts_query

__all__ = ["DualIndexStore", "fts_query"]

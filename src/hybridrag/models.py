from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

import numpy as np


class SourceType(str, Enum):
    """Kind of source a Document was derived from.

    Behaviour differs only in extraction; every variant is stored the same way.
    """

    URL = "url"
    FILE = "file"
    IMAGE = "image"
    PDF = "pdf"
    TEXT = "text"


@dataclass(frozen=True)
class SourceUnit:
    """One ingestible item before chunking.

    origin is an absolute file path, a URL, or `text:<hash>` for inline text.
    """
    origin: str
    source_type: SourceType
    content_hash: str
    modified_at: Optional[datetime] = None
    framework: Optional[str] = None
    title: Optional[str] = None

    @property
    def file_path(self) -> Optional[str]:
        if self.source_type in (SourceType.FILE, SourceType.IMAGE, SourceType.PDF):
            return self.origin
        return None


@dataclass
class Document:
    """One persisted, queryable chunk record."""
    id: str
    origin: str
    chunk_index: int
    source_type: SourceType
    text: str
    content_hash: str
    file_path: Optional[str] = None
    file_modified_at: Optional[datetime] = None
    page_number: Optional[int] = None
    framework: Optional[str] = None
    title: Optional[str] = None
    embedding: Optional[np.ndarray] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class SourceRecord:
    """Per-origin state the incremental planner compares against."""
    origin: str
    source_type: SourceType
    content_hash: str
    file_modified_at: Optional[datetime] = None
    framework: Optional[str] = None
    title: Optional[str] = None
    document_count: int = 0
    complete: bool = True
    ingested_at: Optional[datetime] = None


# Ingest decisions (ephemeral, recomputed every run)

@dataclass(frozen=True)
class Skip:
    reason: str


@dataclass(frozen=True)
class Ingest:
    pass


@dataclass(frozen=True)
class Reingest:
    old_ids: tuple[str, ...] = ()


IngestDecision = Union[Skip, Ingest, Reingest]


@dataclass(frozen=True)
class SearchFilters:
    """Metadata pre-filter applied before either sub-search."""
    source_types: tuple[SourceType, ...] = ()
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    framework: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.source_types or self.since or self.until or self.framework)


@dataclass(frozen=True)
class SearchHit:
    document: Document
    score: float
    rank: int
    vector_rank: Optional[int] = None
    keyword_rank: Optional[int] = None

    @property
    def method(self) -> str:
        if self.vector_rank is not None and self.keyword_rank is not None:
            return "hybrid"
        if self.vector_rank is not None:
            return "vector"
        return "keyword"

    def to_dict(self) -> dict[str, Any]:
        doc = self.document
        return {
            "rank": self.rank,
            "id": doc.id,
            "score": self.score,
            "method": self.method,
            "origin": doc.origin,
            "source_type": doc.source_type.value,
            "title": doc.title,
            "page_number": doc.page_number,
            "framework": doc.framework,
            "text": doc.text,
        }


QueryResult = list[SearchHit]


@dataclass(frozen=True)
class ItemFailure:
    origin: str
    reason: str
    detail: str = ""


@dataclass
class CollectionStats:
    """Counters from one PathResolver walk."""

    total_found: int = 0
    collected: int = 0
    skipped_ignored: int = 0
    skipped_extension: int = 0
    skipped_size: int = 0
    skipped_hidden: int = 0


@dataclass
class IngestReport:
    """Summary of one ingestion run."""

    succeeded: int = 0
    skipped: int = 0
    failed: list[ItemFailure] = field(default_factory=list)
    documents_written: int = 0
    documents_deleted: int = 0
    embedding_failures: int = 0
    elapsed_seconds: float = 0.0
    collection: Optional[CollectionStats] = None

    @property
    def processed(self) -> int:
        return self.succeeded + self.skipped

    @property
    def total_failure(self) -> bool:
        """True when no item could be processed at all."""
        return self.processed == 0

    def failure_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for f in self.failed:
            counts[f.reason] = counts.get(f.reason, 0) + 1
        return counts

"""Data classes for the parallel ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class UnitResult:
    """Result from one ingestion worker."""

    origin: str
    status: str  # "ingested" | "skipped" | "failed"
    reason: str = ""
    detail: str = ""
    documents_written: int = 0
    documents_deleted: int = 0
    embedding_failures: int = 0

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from ..chunking import MarkdownChunker, SizeChunker
from ..config import EngineConfig
from ..embeddings import RateLimitedEmbedder, create_embedder, create_rate_budget, rate_limited
from ..errors import (
    EmbeddingFailedError,
    ExtractionError,
    IndexWriteError,
    InvalidSource,
    ProviderError,
    UnsupportedContentError,
)
from ..extractors.base import Extracted, ExtractedPage, ExtractorRegistry, VisionTextExtractor
from ..extractors.image import GeminiVisionExtractor, ImageExtractor, ResilientVision
from ..extractors.pdf import PdfExtractor
from ..extractors.text import TextExtractor
from ..extractors.url import UrlExtractor
from ..hashing import document_id, hash_file, hash_text
from ..models import (
    Document,
    IngestDecision,
    IngestReport,
    ItemFailure,
    Skip,
    SourceRecord,
    SourceType,
    SourceUnit,
)
from ..paths import PathFilter, PathResolver
from ..resilience import RetryPolicy
from ..store.sqlite_store import DualIndexStore
from ..utils import mtime_of, utcnow
from .planner import IncrementalPlanner
from .types import UnitResult

logger = logging.getLogger(__name__)


def create_vision(cfg: EngineConfig) -> Optional[VisionTextExtractor]:
    """Build the configured vision extractor, or None when disabled."""
    if cfg.vision_provider == "off":
        return None
    if cfg.vision_provider == "gemini":
        return GeminiVisionExtractor(
            api_key=cfg.api_key,
            model=cfg.vision_model,
            temperature=cfg.vision_temperature,
            max_output_tokens=cfg.vision_max_output_tokens,
            timeout_s=cfg.vision_timeout_s,
        )
    raise ValueError(f"Unknown vision provider: {cfg.vision_provider}")


@dataclass
class Ingestor:
    """Ingestion pipeline: resolve → extract → chunk → plan → embed → write.

    Units run on a bounded worker pool. Each origin is processed under its
    store lock, and Documents are written in one transaction only after the
    unit is fully extracted and embedded. Failures are per unit and end up
    in the IngestReport.
    """
    cfg: EngineConfig
    store: Optional[DualIndexStore] = None
    embedder: Optional[RateLimitedEmbedder] = None
    vision: Optional[VisionTextExtractor] = None

    def __post_init__(self) -> None:
        if self.store is None:
            self.store = DualIndexStore(self.cfg.db_path)
            self.store.init()

        if self.embedder is None:
            self.embedder = rate_limited(self.cfg, create_embedder(self.cfg), create_rate_budget(self.cfg))

        if self.vision is None:
            self.vision = create_vision(self.cfg)
        if self.vision is not None and not isinstance(self.vision, ResilientVision):
            self.vision = ResilientVision(self.vision, RetryPolicy(
                max_retries=self.cfg.max_retries,
                backoff_base_s=self.cfg.backoff_base_ms / 1000.0,
                jitter=self.cfg.jitter,
                provider="vision",
            ))

        # Extractors
        self.extractors = ExtractorRegistry()
        self.extractors.register(TextExtractor())
        if self.vision is not None:
            self.extractors.register(ImageExtractor(vision=self.vision))
        self.extractors.register(PdfExtractor(
            vision=self.vision,
            empty_page_strategy=self.cfg.pdf_empty_page_strategy,
        ))
        self.url_extractor = UrlExtractor(timeout_s=self.cfg.url_timeout_s, user_agent=self.cfg.user_agent)

        # Chunkers
        self.size_chunker = SizeChunker(max_chunk_size=self.cfg.max_chunk_size, overlap=self.cfg.overlap)
        self.markdown_chunker = MarkdownChunker(
            max_chunk_size=self.cfg.max_chunk_size,
            overlap=self.cfg.overlap,
            min_chunk_size=self.cfg.min_chunk_size,
        )
        self.planner = IncrementalPlanner()

    # Entry points

    def ingest_path(
        self,
        root: str | Path,
        *,
        extensions: Optional[list[str]] = None,
        recursive: Optional[bool] = None,
        force: bool = False,
        framework: Optional[str] = None,
        workers: Optional[int] = None,
    ) -> IngestReport:
        """Ingest one file or a directory tree.

        Raises InvalidSource when root itself is unusable; everything below
        that is reported per file.
        """
        resolver = PathResolver(PathFilter.from_config(self.cfg, extensions, recursive))
        paths = resolver.resolve(root)
        logger.info(f"Ingesting {paths.root} (force={force}, framework={framework})")

        report = self._run(paths, lambda p: self._process_file(p, force, framework), label=str, workers=workers)
        report.collection = paths.stats
        logger.info(
            f"Collected {paths.stats.collected}/{paths.stats.total_found} files "
            f"(ignored={paths.stats.skipped_ignored}, extension={paths.stats.skipped_extension}, "
            f"size={paths.stats.skipped_size}, hidden={paths.stats.skipped_hidden})"
        )
        return report

    def ingest_url(self, url: str, *, force: bool = False, framework: Optional[str] = None) -> IngestReport:
        return self._run([url], lambda u: self._process_url(u, force, framework), label=str)

    def ingest_text(
        self, text: str, *, title: Optional[str] = None, force: bool = False, framework: Optional[str] = None
    ) -> IngestReport:
        return self._run([text], lambda t: self._process_text(t, title, force, framework),
                         label=lambda t: f"text:{hash_text(t)[:16]}")

    # Worker pool

    def _run(
        self, items: Iterable, fn: Callable[..., UnitResult], label: Callable, workers: Optional[int] = None
    ) -> IngestReport:
        start = time.time()
        report = IngestReport()
        workers = max(1, workers or self.cfg.workers)

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures: dict[Future, str] = {executor.submit(fn, item): label(item) for item in items}
            logger.info(f"Submitted {len(futures)} unit(s) to {workers} worker(s)")
            try:
                for future in as_completed(futures):
                    origin = futures[future]
                    try:
                        result = future.result()
                    except Exception as e:
                        logger.error(f"Worker crashed for {origin}: {e}", exc_info=True)
                        result = UnitResult(origin=origin, status="failed", reason="internal", detail=str(e))
                    self._record(report, result)
            except KeyboardInterrupt:
                logger.warning("Interrupted: cancelling pending units (completed writes are kept)")
                executor.shutdown(wait=True, cancel_futures=True)
                raise

        report.elapsed_seconds = time.time() - start
        logger.info(
            f"Ingestion complete: {report.succeeded} ingested, {report.skipped} skipped, "
            f"{len(report.failed)} failed, {report.documents_written} documents written, "
            f"{report.documents_deleted} deleted in {report.elapsed_seconds:.1f}s"
        )
        return report

    def _record(self, report: IngestReport, result: UnitResult) -> None:
        if result.status == "ingested":
            report.succeeded += 1
        elif result.status == "skipped":
            report.skipped += 1
        else:
            report.failed.append(ItemFailure(origin=result.origin, reason=result.reason, detail=result.detail))
            logger.warning(f"Failed {result.origin}: {result.reason}: {result.detail}")
        report.documents_written += result.documents_written
        report.documents_deleted += result.documents_deleted
        report.embedding_failures += result.embedding_failures

    # Units

    def _guard(self, origin: str, work: Callable[[], UnitResult]) -> UnitResult:
        """Run one unit under its origin lock, turning known errors into a failed result."""
        try:
            with self.store.origin_lock(origin):
                return work()
        except (InvalidSource, ExtractionError, ProviderError, EmbeddingFailedError, IndexWriteError) as e:
            reason = getattr(e, "reason", "invalid_source")
            return UnitResult(origin=origin, status="failed", reason=reason, detail=str(e))
        except OSError as e:
            return UnitResult(origin=origin, status="failed", reason="io", detail=str(e))

    def _process_file(self, path: Path, force: bool, framework: Optional[str]) -> UnitResult:
        origin = str(path)

        def work() -> UnitResult:
            extractor = self.extractors.get(path)
            if extractor is None:
                raise UnsupportedContentError(f"No extractor for {path.suffix} (vision disabled?)")

            modified_at = mtime_of(path)
            prior = self.store.get_source(origin)
            hashed: dict[str, str] = {}

            def content_hash() -> str:
                if "h" not in hashed:
                    hashed["h"] = hash_file(path)
                return hashed["h"]

            decision = self.planner.plan(
                origin, prior,
                content_hash=content_hash,
                modified_at=modified_at,
                force=force,
                old_ids=tuple(self.store.ids_for_origin(origin)) if prior else (),
            )
            if isinstance(decision, Skip):
                if prior is not None and prior.file_modified_at != modified_at:
                    self.store.touch_source(origin, modified_at)
                logger.debug(f"Skip {origin}: {decision.reason}")
                return UnitResult(origin=origin, status="skipped", reason=decision.reason)

            unit = SourceUnit(
                origin=origin,
                source_type=extractor.source_type,
                content_hash=content_hash(),
                modified_at=modified_at,
                framework=framework,
                title=path.name,
            )
            return self._write_unit(unit, extractor.extract(path), decision)

        return self._guard(origin, work)

    def _process_url(self, url: str, force: bool, framework: Optional[str]) -> UnitResult:
        def work() -> UnitResult:
            extracted = self.url_extractor.extract(url)
            chash = hash_text(extracted.text)
            prior = self.store.get_source(url)
            decision = self.planner.plan(
                url, prior, content_hash=chash, force=force,
                old_ids=tuple(self.store.ids_for_origin(url)) if prior else (),
            )
            if isinstance(decision, Skip):
                return UnitResult(origin=url, status="skipped", reason=decision.reason)
            unit = SourceUnit(
                origin=url,
                source_type=SourceType.URL,
                content_hash=chash,
                framework=framework,
                title=extracted.metadata.get("title"),
            )
            return self._write_unit(unit, extracted, decision)

        return self._guard(url, work)

    def _process_text(self, text: str, title: Optional[str], force: bool, framework: Optional[str]) -> UnitResult:
        chash = hash_text(text)
        origin = f"text:{chash[:16]}"

        def work() -> UnitResult:
            if not text.strip():
                raise UnsupportedContentError("Empty text")
            prior = self.store.get_source(origin)
            decision = self.planner.plan(
                origin, prior, content_hash=chash, force=force,
                old_ids=tuple(self.store.ids_for_origin(origin)) if prior else (),
            )
            if isinstance(decision, Skip):
                return UnitResult(origin=origin, status="skipped", reason=decision.reason)
            unit = SourceUnit(origin=origin, source_type=SourceType.TEXT, content_hash=chash,
                              framework=framework, title=title)
            extracted = Extracted(pages=[ExtractedPage(text=text)], metadata={"markdown": True})
            return self._write_unit(unit, extracted, decision)

        return self._guard(origin, work)

    def _write_unit(self, unit: SourceUnit, extracted: Extracted, decision: IngestDecision) -> UnitResult:
        """Chunk, embed and atomically replace the origin's Documents."""
        use_markdown = self.cfg.markdown_aware and bool(extracted.metadata.get("markdown"))
        chunker = self.markdown_chunker if use_markdown else self.size_chunker

        now = utcnow()
        docs: list[Document] = []
        for page in extracted.pages:
            for c in chunker.chunk(page.text):
                idx = len(docs)
                docs.append(Document(
                    id=document_id(unit.origin, idx),
                    origin=unit.origin,
                    chunk_index=idx,
                    source_type=unit.source_type,
                    text=c.text,
                    content_hash=unit.content_hash,
                    file_path=unit.file_path,
                    file_modified_at=unit.modified_at,
                    page_number=page.page_number,
                    framework=unit.framework,
                    title=unit.title,
                    created_at=now,
                    updated_at=now,
                ))

        outcomes = self.embedder.embed_many([d.text for d in docs])
        failures = 0
        for doc, outcome in zip(docs, outcomes):
            if outcome.ok:
                doc.embedding = outcome.vector
            else:
                failures += 1

        if docs and failures == len(docs):
            first = next(o.error for o in outcomes if o.error is not None)
            raise EmbeddingFailedError(f"All {failures} chunk(s) failed to embed: {first}", cause=first.cause)

        record = SourceRecord(
            origin=unit.origin,
            source_type=unit.source_type,
            content_hash=unit.content_hash,
            file_modified_at=unit.modified_at,
            framework=unit.framework,
            title=unit.title,
            document_count=len(docs),
            complete=failures == 0,
            ingested_at=now,
        )
        deleted = self.store.replace_origin(record, docs, model_id=self.embedder.model_id)
        logger.debug(
            f"{type(decision).__name__} {unit.origin}: {len(docs)} documents written, "
            f"{len(deleted)} replaced, {failures} without embedding"
        )
        return UnitResult(
            origin=unit.origin,
            status="ingested",
            documents_written=len(docs),
            documents_deleted=len(deleted),
            embedding_failures=failures,
        )

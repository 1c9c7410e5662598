from __future__ import annotations

import json
import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import typer

from .config import DEFAULT_DATA_DIR, EngineConfig, _expand, load_config
from .embeddings import create_embedder, create_rate_budget, rate_limited
from .errors import ConfigurationError, EmbeddingFailedError, InvalidSource, StoreCorruptedError
from .extractors.url import validate_url
from .indexer.ingestor import Ingestor, create_vision
from .models import IngestReport, SearchFilters, SourceType
from .retrieval.retriever import SEARCH_MODES, HybridRetriever
from .store.sqlite_store import DualIndexStore
from .utils import format_bytes, parse_date, to_iso, truncate_text

app = typer.Typer(add_completion=False, no_args_is_help=True)

logger = logging.getLogger(__name__)


def _resolve_log_path(log_path_template: str | None) -> str | None:
    """Resolve log file path with date/time pattern substitution.

    Supports:
    - {date}: YYYYMMDD (e.g., 20260123)
    - {datetime}: YYYYMMDD_HHMMSS (e.g., 20260123_142030)
    """
    if not log_path_template:
        return None

    now = datetime.now()
    resolved = log_path_template.replace("{date}", now.strftime("%Y%m%d"))
    resolved = resolved.replace("{datetime}", now.strftime("%Y%m%d_%H%M%S"))

    log_path = Path(_expand(resolved))
    log_path.parent.mkdir(parents=True, exist_ok=True)
    return str(log_path)


def _setup_logging(log_file: str | None, log_level: str, verbose: bool) -> None:
    """Configure the hybridrag logger: stderr always, plus a rotating file if requested."""
    level = logging.DEBUG if verbose else getattr(logging, log_level.upper(), logging.INFO)

    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    path = _resolve_log_path(log_file)
    if path:
        handlers.append(RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=3))

    root = logging.getLogger("hybridrag")
    root.setLevel(level)
    # Repeated invocations in one process (tests) must not stack handlers
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()
    for h in handlers:
        h.setFormatter(logging.Formatter(fmt, datefmt))
        root.addHandler(h)


def _cfg(config: Optional[str], verbose: bool = False, log_file: Optional[str] = None) -> EngineConfig:
    try:
        cfg = load_config(config)
    except ConfigurationError as e:
        raise typer.BadParameter(str(e), param_hint="--config") from e
    _setup_logging(log_file or cfg.log_file, cfg.log_level, verbose)
    return cfg


def _store(cfg: EngineConfig) -> DualIndexStore:
    store = DualIndexStore(cfg.db_path)
    try:
        store.init()
    except StoreCorruptedError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    return store


def _embedder(cfg: EngineConfig):
    try:
        return rate_limited(cfg, create_embedder(cfg), create_rate_budget(cfg))
    except ConfigurationError as e:
        raise typer.BadParameter(str(e)) from e


def _print_report(report: IngestReport) -> None:
    typer.echo(
        f"Ingestion complete: {report.succeeded} ingested, {report.skipped} skipped, "
        f"{len(report.failed)} failed in {report.elapsed_seconds:.1f}s"
    )
    typer.echo(f"  Documents: {report.documents_written} written, {report.documents_deleted} deleted")
    if report.embedding_failures:
        typer.echo(f"  ({report.embedding_failures} chunks without embedding, re-ingested next run)")
    if report.collection is not None:
        c = report.collection
        typer.echo(
            f"  Files: {c.collected} collected of {c.total_found} found "
            f"({c.skipped_ignored} ignored, {c.skipped_extension} extension, "
            f"{c.skipped_size} too large, {c.skipped_hidden} hidden)"
        )
    if report.failed:
        counts = ", ".join(f"{reason}={n}" for reason, n in sorted(report.failure_counts().items()))
        typer.echo(f"  Failures: {counts}")
        for f in report.failed:
            typer.echo(f"    {f.origin}: [{f.reason}] {truncate_text(f.detail)}")


@app.command()
def init(out: str = typer.Option(f"{DEFAULT_DATA_DIR}/config.toml", help="Write example config to this path"),
         data_dir: str = typer.Option(DEFAULT_DATA_DIR, help="Directory holding the knowledge database")):
    """Write a starter config.toml."""
    outp = Path(_expand(out))
    outp.parent.mkdir(parents=True, exist_ok=True)
    outp.write_text(f"""[storage]
data_dir = "{data_dir}"
db_name = "knowledge.db"

[sources]
ignore = [".git/", "node_modules/", "__pycache__/", "*.lock"]
recursive = true
max_file_size = 10485760
skip_hidden = true
respect_gitignore = true

[chunking]
max_chunk_size = 1500
overlap = 150
min_chunk_size = 300
markdown_aware = true

[embeddings]
provider = "gemini"
model = "gemini-embedding-001"
dimensions = 768
# api_key = "..."  (or set GEMINI_API_KEY / GOOGLE_API_KEY)
requests_per_minute = 60
min_interval_ms = 1000
max_retries = 3

[vision]
# "off" disables image ingestion and the PDF vision fallback
provider = "gemini"
model = "gemini-2.0-flash"
pdf_empty_page_strategy = "keep"

[retrieval]
top_k = 5
rrf_k = 60

[ingest]
workers = 4

[logging]
level = "INFO"
# file = "{DEFAULT_DATA_DIR}/logs/hybridrag_{{date}}.log"
""", encoding="utf-8")
    typer.echo(f"Wrote {outp}")


@app.command()
def ingest(
    file: Optional[str] = typer.Option(None, "--file", help="Ingest a single file"),
    directory: Optional[str] = typer.Option(None, "--dir", help="Ingest a directory tree"),
    url: Optional[str] = typer.Option(None, "--url", help="Ingest a web page"),
    text: Optional[str] = typer.Option(None, "--text", help="Ingest literal text"),
    title: Optional[str] = typer.Option(None, help="Title for --text"),
    ext: Optional[str] = typer.Option(None, help="Comma-separated extensions to include (e.g. md,txt)"),
    force: bool = typer.Option(False, help="Re-ingest even if unchanged"),
    framework: Optional[str] = typer.Option(None, help="Framework tag stored with every Document"),
    workers: Optional[int] = typer.Option(None, help="Override ingest workers"),
    no_recursive: bool = typer.Option(False, "--no-recursive", help="Do not descend into subdirectories"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config.toml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging"),
    log_file: Optional[str] = typer.Option(None, "--log-file", "-l", help="Log file path (supports {date}, {datetime})"),
):
    """Ingest exactly one source: --file, --dir, --url or --text."""
    given = [name for name, v in (("--file", file), ("--dir", directory), ("--url", url), ("--text", text)) if v is not None]
    if len(given) != 1:
        raise typer.BadParameter("Provide exactly one of --file, --dir, --url, --text.")
    if workers is not None and workers < 1:
        raise typer.BadParameter(f"Invalid workers: {workers}. Must be >= 1.", param_hint="--workers")

    if file is not None and not Path(file).expanduser().is_file():
        raise typer.BadParameter(f"Not a file: {file}", param_hint="--file")
    if directory is not None and not Path(directory).expanduser().is_dir():
        raise typer.BadParameter(f"Not a directory: {directory}", param_hint="--dir")
    if url is not None:
        try:
            validate_url(url)
        except InvalidSource as e:
            raise typer.BadParameter(str(e), param_hint="--url") from e
    if text is not None and not text.strip():
        raise typer.BadParameter("Text is empty.", param_hint="--text")

    cfg = _cfg(config, verbose, log_file)
    try:
        vision = create_vision(cfg)
    except ConfigurationError as e:
        raise typer.BadParameter(str(e)) from e
    embedder = _embedder(cfg)
    store = _store(cfg)
    ingestor = Ingestor(cfg, store=store, embedder=embedder, vision=vision)

    try:
        if text is not None:
            report = ingestor.ingest_text(text, title=title, force=force, framework=framework)
        elif url is not None:
            report = ingestor.ingest_url(url, force=force, framework=framework)
        else:
            root = file if file is not None else directory
            extensions = [e.strip() for e in ext.split(",") if e.strip()] if ext else None
            report = ingestor.ingest_path(
                root,
                extensions=extensions,
                recursive=False if no_recursive else None,
                force=force,
                framework=framework,
                workers=workers,
            )
    except InvalidSource as e:
        raise typer.BadParameter(str(e)) from e
    finally:
        store.close()

    _print_report(report)
    if report.total_failure:
        typer.echo("Error: no item could be processed.", err=True)
        raise typer.Exit(1)


@app.command()
def query(
    q: str = typer.Argument(..., help="Query text"),
    limit: int = typer.Option(5, "--limit", "-k", help="Number of results"),
    framework: Optional[str] = typer.Option(None, help="Only Documents with this framework tag"),
    source_type: Optional[list[str]] = typer.Option(None, "--source-type", help="Restrict to source type (repeatable)"),
    since: Optional[str] = typer.Option(None, help="Only content dated on/after (ISO date)"),
    until: Optional[str] = typer.Option(None, help="Only content dated on/before (ISO date)"),
    mode: str = typer.Option("hybrid", help="hybrid, vector or keyword"),
    as_json: bool = typer.Option(False, "--json", help="Print results as JSON"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config.toml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging"),
    log_file: Optional[str] = typer.Option(None, "--log-file", "-l", help="Log file path"),
):
    """Hybrid search over everything ingested."""
    if mode not in SEARCH_MODES:
        raise typer.BadParameter(f"Invalid mode: {mode}. Must be one of: {', '.join(SEARCH_MODES)}.",
                                 param_hint="--mode")
    try:
        types = tuple(SourceType(s) for s in (source_type or []))
    except ValueError as e:
        raise typer.BadParameter(
            f"{e}. Must be one of: {', '.join(t.value for t in SourceType)}.", param_hint="--source-type"
        ) from e
    try:
        filters = SearchFilters(
            source_types=types,
            since=parse_date(since) if since else None,
            until=parse_date(until, end_of_day=True) if until else None,
            framework=framework,
        )
    except ValueError as e:
        raise typer.BadParameter(f"Invalid date: {e}") from e

    cfg = _cfg(config, verbose, log_file)
    store = _store(cfg)
    retriever = HybridRetriever(
        store=store,
        embedder=_embedder(cfg) if mode != "keyword" else None,
        rrf_k=cfg.rrf_k,
        candidate_multiplier=cfg.candidate_multiplier,
    )
    try:
        hits = retriever.search(q, k=limit, filters=filters, mode=mode)
    except EmbeddingFailedError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e
    finally:
        store.close()

    if as_json:
        typer.echo(json.dumps([h.to_dict() for h in hits], indent=2))
        return
    if not hits:
        typer.echo("No results.")
        return
    for h in hits:
        doc = h.document
        page = f" p.{doc.page_number}" if doc.page_number else ""
        typer.echo(f"{h.rank}. [{h.score:.4f} {h.method}] {doc.title or doc.origin}{page}")
        typer.echo(f"   {doc.origin} ({doc.source_type.value}{', ' + doc.framework if doc.framework else ''})")
        typer.echo(f"   {truncate_text(doc.text)}")


@app.command(name="list")
def list_sources(
    framework: Optional[str] = typer.Option(None, help="Only sources with this framework tag"),
    limit: int = typer.Option(20, "--limit", help="Maximum sources to show"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config.toml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging"),
):
    """List ingested sources, newest first."""
    cfg = _cfg(config, verbose)
    store = _store(cfg)
    try:
        sources = store.list_sources(framework=framework, limit=limit)
    finally:
        store.close()

    if not sources:
        typer.echo("No sources ingested.")
        return
    for s in sources:
        flags = "" if s.complete else " (incomplete)"
        tag = f" [{s.framework}]" if s.framework else ""
        typer.echo(f"{s.origin}{tag}")
        typer.echo(f"   {s.source_type.value}, {s.document_count} documents, ingested {to_iso(s.ingested_at)}{flags}")


@app.command()
def delete(
    doc_id: Optional[str] = typer.Option(None, "--id", help="Delete one Document by id"),
    origin: Optional[str] = typer.Option(None, "--origin", help="Delete every Document of a file path or URL"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config.toml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose (DEBUG) logging"),
):
    """Delete Documents by id or by origin."""
    if (doc_id is None) == (origin is None):
        raise typer.BadParameter("Provide exactly one of --id, --origin.")

    cfg = _cfg(config, verbose)
    store = _store(cfg)
    try:
        if doc_id is not None:
            if not store.delete(doc_id):
                typer.echo(f"No Document with id {doc_id}", err=True)
                raise typer.Exit(1)
            typer.echo(f"Deleted Document {doc_id}")
        else:
            p = Path(origin).expanduser()
            key = str(p.absolute()) if p.exists() else origin
            n = store.delete_by_origin(key)
            if n == 0 and store.get_source(key) is None:
                typer.echo(f"Nothing ingested from {key}", err=True)
                raise typer.Exit(1)
            typer.echo(f"Deleted {n} Documents from {key}")
    finally:
        store.close()


@app.command()
def status(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config.toml"),
    as_json: bool = typer.Option(False, "--json", help="Print status as JSON"),
):
    """Show what is in the knowledge store."""
    cfg = _cfg(config)
    store = _store(cfg)
    try:
        st = store.status()
    finally:
        store.close()

    if as_json:
        typer.echo(json.dumps(st, indent=2))
        return
    typer.echo(f"Database: {st['db_path']} ({format_bytes(st['db_size_bytes'])})")
    typer.echo(f"Documents: {st['documents']} ({st['embedded_documents']} embedded)")
    for t, n in sorted(st["documents_by_type"].items()):
        typer.echo(f"  {t}: {n}")
    incomplete = f", {st['incomplete_sources']} incomplete" if st["incomplete_sources"] else ""
    typer.echo(f"Sources: {st['sources']}{incomplete}")
    models = ", ".join(st["embedding_models"]) or cfg.embedding_model
    typer.echo(f"Embedding model: {models} ({cfg.embedding_dimensions} dims)")


if __name__ == "__main__":
    app()

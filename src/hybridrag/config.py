from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import os
import tomllib

from .errors import ConfigurationError

TEXT_EXTENSIONS = (
    "md", "txt", "rs", "ts", "tsx", "js", "jsx", "py", "json", "toml", "yaml", "yml",
    "html", "css", "scss", "go", "java", "c", "cpp", "h", "hpp", "sh", "bash", "zsh",
    "sql", "xml", "csv",
)
IMAGE_EXTENSIONS = ("png", "jpg", "jpeg", "webp", "gif", "bmp")
PDF_EXTENSIONS = ("pdf",)
ALL_EXTENSIONS = TEXT_EXTENSIONS + IMAGE_EXTENSIONS + PDF_EXTENSIONS

DEFAULT_DATA_DIR = "~/.hybridrag"
VALID_DIMENSIONS = (768, 1536, 3072)

def _expand(p: str) -> str:
    return os.path.expandvars(os.path.expanduser(p))

@dataclass(frozen=True)
class EngineConfig:
    """Configuration for the local retrieval engine.

    Everything lives in a single SQLite file under data_dir.
    """

    data_dir: Path = field(default_factory=lambda: Path(_expand(DEFAULT_DATA_DIR)))
    db_name: str = "knowledge.db"

    # Sources
    extensions: tuple[str, ...] = ALL_EXTENSIONS
    ignore: tuple[str, ...] = (".git/", "node_modules/", "__pycache__/", "*.lock")
    recursive: bool = True
    max_file_size: int = 10 * 1024 * 1024
    skip_hidden: bool = True
    respect_gitignore: bool = True
    skip_images: bool = False
    skip_pdfs: bool = False

    # Chunking
    max_chunk_size: int = 1500
    overlap: int = 150
    min_chunk_size: int = 300
    markdown_aware: bool = True

    # Embeddings
    embedding_provider: str = "gemini"
    embedding_model: str = "gemini-embedding-001"
    embedding_dimensions: int = 768
    api_key: str | None = None
    embedding_timeout_s: float = 30.0
    requests_per_minute: int = 60
    min_interval_ms: int = 1000
    max_retries: int = 3
    backoff_base_ms: int = 2000
    jitter: float = 0.25

    # Vision
    vision_provider: str = "gemini"  # gemini|off
    vision_model: str = "gemini-2.0-flash"
    vision_temperature: float = 0.1
    vision_max_output_tokens: int = 8192
    vision_timeout_s: float = 60.0
    pdf_empty_page_strategy: str = "keep"  # keep|vision

    # URL fetching
    url_timeout_s: float = 30.0
    user_agent: str = "hybridrag/0.1"

    # Retrieval
    top_k: int = 5
    rrf_k: int = 60
    candidate_multiplier: int = 2

    # Ingest
    workers: int = 4

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    def __post_init__(self):
        """Convert string paths to Path objects and expand ~ and environment variables."""
        if isinstance(self.data_dir, str):
            object.__setattr__(self, "data_dir", Path(_expand(self.data_dir)))

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name

    @staticmethod
    def from_toml(path: str | Path) -> "EngineConfig":
        data = tomllib.loads(Path(path).read_text(encoding="utf-8"))
        storage = data.get("storage", {})
        src = data.get("sources", {})
        chunking = data.get("chunking", {})
        emb = data.get("embeddings", {})
        vision = data.get("vision", {})
        url = data.get("url", {})
        ret = data.get("retrieval", {})
        ingest = data.get("ingest", {})
        log = data.get("logging", {})

        data_dir = Path(_expand(storage.get("data_dir", DEFAULT_DATA_DIR))).resolve()

        extensions = tuple(e.lower().lstrip(".") for e in src.get("extensions", ALL_EXTENSIONS))
        if not extensions:
            raise ValueError("Invalid extensions: empty list. At least one extension is required.")

        max_file_size = int(src.get("max_file_size", 10 * 1024 * 1024))
        if max_file_size <= 0:
            raise ValueError(f"Invalid max_file_size: {max_file_size}. Must be positive.")

        # Validate chunking parameters
        max_chunk_size = int(chunking.get("max_chunk_size", 1500))
        overlap = int(chunking.get("overlap", 150))
        min_chunk_size = int(chunking.get("min_chunk_size", 300))
        if max_chunk_size < 100 or max_chunk_size > 50000:
            raise ValueError(f"Invalid max_chunk_size: {max_chunk_size}. Must be between 100 and 50000.")
        if overlap < 0 or overlap * 2 >= max_chunk_size:
            raise ValueError(f"Invalid overlap: {overlap}. Must be between 0 and half of max_chunk_size.")
        if min_chunk_size < 0 or min_chunk_size > max_chunk_size:
            raise ValueError(f"Invalid min_chunk_size: {min_chunk_size}. Must be between 0 and max_chunk_size.")

        # Validate embedding parameters
        dimensions = int(emb.get("dimensions", 768))
        if dimensions not in VALID_DIMENSIONS:
            raise ValueError(f"Invalid dimensions: {dimensions}. Must be one of {VALID_DIMENSIONS}.")
        rpm = int(emb.get("requests_per_minute", 60))
        if rpm <= 0 or rpm > 10000:
            raise ValueError(f"Invalid requests_per_minute: {rpm}. Must be between 1 and 10000.")
        min_interval_ms = int(emb.get("min_interval_ms", 1000))
        if min_interval_ms < 0:
            raise ValueError(f"Invalid min_interval_ms: {min_interval_ms}. Must be >= 0.")
        max_retries = int(emb.get("max_retries", 3))
        if max_retries < 0 or max_retries > 10:
            raise ValueError(f"Invalid max_retries: {max_retries}. Must be between 0 and 10.")
        jitter = float(emb.get("jitter", 0.25))
        if jitter < 0 or jitter >= 1:
            raise ValueError(f"Invalid jitter: {jitter}. Must be in [0, 1).")

        embedding_provider = emb.get("provider", "gemini")
        if embedding_provider != "gemini":
            raise ValueError(f"Invalid embeddings provider: {embedding_provider}. Must be 'gemini'.")
        vision_provider = vision.get("provider", "gemini")
        if vision_provider not in ("gemini", "off"):
            raise ValueError(f"Invalid vision provider: {vision_provider}. Must be 'gemini' or 'off'.")

        strategy = vision.get("pdf_empty_page_strategy", "keep")
        if strategy not in ("keep", "vision"):
            raise ValueError(f"Invalid pdf_empty_page_strategy: {strategy}. Must be 'keep' or 'vision'.")

        # Validate retrieval parameters
        top_k = int(ret.get("top_k", 5))
        rrf_k = int(ret.get("rrf_k", 60))
        multiplier = int(ret.get("candidate_multiplier", 2))
        if top_k <= 0 or top_k > 1000:
            raise ValueError(f"Invalid top_k: {top_k}. Must be between 1 and 1000.")
        if rrf_k <= 0:
            raise ValueError(f"Invalid rrf_k: {rrf_k}. Must be positive.")
        if multiplier < 1 or multiplier > 20:
            raise ValueError(f"Invalid candidate_multiplier: {multiplier}. Must be between 1 and 20.")

        workers = int(ingest.get("workers", 4))
        if workers <= 0 or workers > 64:
            raise ValueError(f"Invalid workers: {workers}. Must be between 1 and 64.")

        log_file = log.get("file")

        return EngineConfig(
            data_dir=data_dir,
            db_name=storage.get("db_name", "knowledge.db"),
            extensions=extensions,
            ignore=tuple(src.get("ignore", EngineConfig.ignore)),
            recursive=bool(src.get("recursive", True)),
            max_file_size=max_file_size,
            skip_hidden=bool(src.get("skip_hidden", True)),
            respect_gitignore=bool(src.get("respect_gitignore", True)),
            skip_images=bool(src.get("skip_images", False)),
            skip_pdfs=bool(src.get("skip_pdfs", False)),
            max_chunk_size=max_chunk_size,
            overlap=overlap,
            min_chunk_size=min_chunk_size,
            markdown_aware=bool(chunking.get("markdown_aware", True)),
            embedding_provider=embedding_provider,
            embedding_model=emb.get("model", "gemini-embedding-001"),
            embedding_dimensions=dimensions,
            api_key=emb.get("api_key"),
            embedding_timeout_s=float(emb.get("timeout_s", 30.0)),
            requests_per_minute=rpm,
            min_interval_ms=min_interval_ms,
            max_retries=max_retries,
            backoff_base_ms=int(emb.get("backoff_base_ms", 2000)),
            jitter=jitter,
            vision_provider=vision_provider,
            vision_model=vision.get("model", "gemini-2.0-flash"),
            vision_temperature=float(vision.get("temperature", 0.1)),
            vision_max_output_tokens=int(vision.get("max_output_tokens", 8192)),
            vision_timeout_s=float(vision.get("timeout_s", 60.0)),
            pdf_empty_page_strategy=strategy,
            url_timeout_s=float(url.get("timeout_s", 30.0)),
            user_agent=url.get("user_agent", "hybridrag/0.1"),
            top_k=top_k,
            rrf_k=rrf_k,
            candidate_multiplier=multiplier,
            workers=workers,
            log_level=log.get("level", "INFO"),
            log_file=_expand(log_file) if log_file else None,
        )


def load_config(path: str | Path | None = None) -> EngineConfig:
    """Load config from an explicit path, the default location, or defaults.

    Raises ConfigurationError for a missing explicit file, malformed TOML or
    an out-of-range value.
    """
    if path is not None:
        p = Path(_expand(str(path)))
        if not p.exists():
            raise ConfigurationError(f"Config file not found: {p}")
    else:
        p = Path(_expand(DEFAULT_DATA_DIR)) / "config.toml"
        if not p.exists():
            return EngineConfig()
    try:
        return EngineConfig.from_toml(p)
    except ValueError as e:
        raise ConfigurationError(f"{p}: {e}") from e

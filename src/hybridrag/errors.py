"""Exception hierarchy for ingestion and retrieval.

Per-unit errors (InvalidSource, ExtractionError, ProviderError,
EmbeddingFailedError, IndexWriteError) are caught by the ingestor and turned
into report entries. They only reach the CLI when nothing could be processed.
"""
from __future__ import annotations


class HybridRagError(Exception):
    """Base class for all hybridrag errors."""


class ConfigurationError(HybridRagError, ValueError):
    """Invalid or missing configuration (bad TOML value, missing API key)."""


class InvalidSource(HybridRagError):
    """A path or URL that cannot be ingested at all."""


class FetchError(InvalidSource):
    """Network or HTTP failure while fetching a URL."""


class ExtractionError(HybridRagError):
    """Content could not be turned into text.

    `reason` is one of "encoding", "corrupt" or "unsupported" and is what the
    ingestion report shows.
    """

    reason = "extraction"


class EncodingError(ExtractionError):
    reason = "encoding"


class CorruptContentError(ExtractionError):
    reason = "corrupt"


class UnsupportedContentError(ExtractionError):
    reason = "unsupported"


class ProviderError(HybridRagError):
    """Failure reported by the remote embedding or vision provider."""

    retryable = False
    reason = "provider"


class RateLimitedError(ProviderError):
    retryable = True
    reason = "rate_limited"

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class UnavailableError(ProviderError):
    retryable = True
    reason = "unavailable"


class ProviderTimeoutError(ProviderError):
    retryable = True
    reason = "timeout"


class InvalidInputError(ProviderError):
    reason = "invalid_input"


class EmbeddingFailedError(HybridRagError):
    """Terminal embedding failure after retries were exhausted."""

    reason = "embedding_failed"

    def __init__(self, message: str, cause: ProviderError | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class IndexWriteError(HybridRagError):
    """Storage-layer failure. The affected origin keeps its prior state."""

    reason = "index_write"


class StoreCorruptedError(HybridRagError):
    """The database file cannot be opened or has an unknown schema. Fatal."""

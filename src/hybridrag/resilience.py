"""Error classification and backoff for remote provider calls.

Translates arbitrary client exceptions (google-genai, httpx, requests,
google.api_core) into the ProviderError taxonomy used by the embedder and the
vision extractor.
"""
from __future__ import annotations

import logging
import random
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, TypeVar

from .errors import (
    ExtractionError,
    InvalidInputError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedError,
    UnavailableError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

class ErrorCategory(Enum):
    """Classification of errors for retry behavior."""

    TRANSIENT = "transient"  # Retry with backoff, bounded
    RATE_LIMITED = "rate_limited"  # Retry with backoff, honour Retry-After
    PERMANENT = "permanent"  # Terminal for this item
    AUTH_FAILURE = "auth_failure"  # Terminal, credentials are wrong


_GRPC_TO_HTTP = {
    1: 499,  # CANCELLED
    2: 500,  # UNKNOWN
    3: 400,  # INVALID_ARGUMENT
    4: 504,  # DEADLINE_EXCEEDED
    5: 404,  # NOT_FOUND
    7: 403,  # PERMISSION_DENIED
    8: 429,  # RESOURCE_EXHAUSTED
    13: 500,  # INTERNAL
    14: 503,  # UNAVAILABLE
    16: 401,  # UNAUTHENTICATED
}

# A status code standing alone in a message, not a digit run inside "4000 ms"
_STATUS_IN_MESSAGE = re.compile(r"\b(400|401|403|404|422|429|500|502|503|504)\b")


def _extract_status_code(error: Exception) -> int | None:
    """Extract HTTP status code from various exception types."""
    # google-genai errors
    code = getattr(error, "code", None)
    if isinstance(code, int):
        return code

    code = getattr(error, "status_code", None)
    if isinstance(code, int):
        return code

    # httpx / requests errors
    response = getattr(error, "response", None)
    if response is not None:
        code = getattr(response, "status_code", None)
        if isinstance(code, int):
            return code

    # google.api_core errors
    grpc_code = getattr(error, "grpc_status_code", None)
    if grpc_code in _GRPC_TO_HTTP:
        return _GRPC_TO_HTTP[grpc_code]

    # Try parsing from error message as last resort
    match = _STATUS_IN_MESSAGE.search(str(error))
    if match:
        return int(match.group(1))

    return None


def _extract_retry_after(error: Exception) -> float | None:
    """Extract Retry-After header value from error if present."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None) if response is not None else None
    if headers is not None:
        retry_after = headers.get("Retry-After")
        if isinstance(retry_after, (str, int, float)) and retry_after:
            try:
                return float(retry_after)
            except ValueError:
                logger.debug(f"Ignoring non-numeric Retry-After header: {retry_after!r}")

    delay = getattr(error, "retry_delay", None)
    if isinstance(delay, (int, float)) and not isinstance(delay, bool):
        return float(delay)

    return None


def _is_timeout(error: Exception) -> bool:
    if isinstance(error, TimeoutError):
        return True
    error_type = type(error).__name__
    msg = str(error).lower()
    return "Timeout" in error_type or "timed out" in msg or "timeout" in msg


def classify_error(error: Exception) -> ErrorCategory:
    """Classify exception into retry behavior category."""
    if isinstance(error, ProviderError):
        if isinstance(error, RateLimitedError):
            return ErrorCategory.RATE_LIMITED
        return ErrorCategory.TRANSIENT if error.retryable else ErrorCategory.PERMANENT

    status = _extract_status_code(error)

    if status:
        if status == 429:
            return ErrorCategory.RATE_LIMITED
        if status in (401, 403):
            return ErrorCategory.AUTH_FAILURE
        if status in (400, 404, 422):
            return ErrorCategory.PERMANENT
        if status in (499, 500, 502, 503, 504):
            return ErrorCategory.TRANSIENT

    error_type = type(error).__name__
    error_msg = str(error).lower()

    connection_types = ("Connection", "Timeout", "Socket", "Transport", "Network")
    if any(x in error_type for x in connection_types):
        return ErrorCategory.TRANSIENT

    connection_msgs = ("connection", "timeout", "timed out", "reset", "refused", "unreachable")
    if any(x in error_msg for x in connection_msgs):
        return ErrorCategory.TRANSIENT

    if "json" in error_type.lower() or "decode" in error_msg:
        return ErrorCategory.PERMANENT

    # Unknown errors: safer to retry a bounded number of times
    return ErrorCategory.TRANSIENT


def to_provider_error(error: Exception, provider: str = "provider") -> ProviderError:
    """Wrap an arbitrary client exception in the matching ProviderError."""
    if isinstance(error, ProviderError):
        return error

    category = classify_error(error)
    status = _extract_status_code(error)
    status_str = f" ({status})" if status else ""
    message = f"[{provider}]{status_str} {type(error).__name__}: {error}"

    if category == ErrorCategory.RATE_LIMITED:
        return RateLimitedError(message, retry_after=_extract_retry_after(error))
    if category in (ErrorCategory.PERMANENT, ErrorCategory.AUTH_FAILURE):
        if category == ErrorCategory.AUTH_FAILURE:
            logger.error(f"{message}. Check credentials/API key.")
        return InvalidInputError(message)
    if _is_timeout(error):
        return ProviderTimeoutError(message)
    return UnavailableError(message)


def backoff_delay(
    attempt: int,
    base_s: float,
    jitter: float = 0.0,
    retry_after: float | None = None,
    rng: random.Random | None = None,
) -> float:
    """Exponential backoff: base, 2*base, 4*base... scaled by +/- jitter.

    A Retry-After hint from the provider is used as a floor.
    """
    delay = base_s * (2 ** attempt)
    if jitter:
        r = (rng or random).uniform(-jitter, jitter)
        delay *= 1.0 + r
    if retry_after is not None:
        delay = max(delay, retry_after)
    return max(delay, 0.0)


@dataclass
class RetryPolicy:
    """Bounded retry loop for remote calls.

    Rate-limited and transient failures are retried with exponential backoff;
    anything classified as permanent is raised immediately. Every raised
    error is a ProviderError (or an ExtractionError raised by fn itself).
    """

    max_retries: int = 3
    backoff_base_s: float = 2.0
    jitter: float = 0.25
    provider: str = "provider"
    sleep: Callable[[float], None] = time.sleep
    rng: random.Random | None = None

    def call(
        self,
        fn: Callable[..., T],
        *args: Any,
        before_attempt: Callable[[], Any] | None = None,
        source: str = "unknown",
        **kwargs: Any,
    ) -> T:
        for attempt in range(self.max_retries + 1):
            if before_attempt is not None:
                before_attempt()
            try:
                result = fn(*args, **kwargs)
                if attempt > 0:
                    logger.debug(f"[{self.provider}] {source} succeeded on retry {attempt}")
                return result
            except ExtractionError:
                raise
            except Exception as e:
                err = to_provider_error(e, self.provider)
                if not err.retryable or attempt >= self.max_retries:
                    if err.retryable:
                        logger.warning(f"[{self.provider}] {source}: giving up after {attempt + 1} attempts: {err}")
                    if err is e:
                        raise
                    raise err from e

                retry_after = err.retry_after if isinstance(err, RateLimitedError) else None
                wait = backoff_delay(attempt, self.backoff_base_s, self.jitter, retry_after, self.rng)
                logger.info(
                    f"[{self.provider}] Retry {attempt + 1}/{self.max_retries} for {source}: "
                    f"{type(err).__name__} (waiting {wait:.1f}s)"
                )
                self.sleep(wait)

        raise AssertionError("unreachable")

"""Unit tests for provider error classification and the retry policy."""
from __future__ import annotations

import random
from unittest.mock import Mock

import pytest

from hybridrag.errors import (
    CorruptContentError,
    InvalidInputError,
    ProviderTimeoutError,
    RateLimitedError,
    UnavailableError,
)
from hybridrag.resilience import (
    ErrorCategory,
    RetryPolicy,
    backoff_delay,
    classify_error,
    to_provider_error,
)


class TestErrorClassification:
    """Tests for error classification logic."""

    def test_classify_429_is_rate_limited(self):
        error = Mock()
        error.code = 429
        assert classify_error(error) == ErrorCategory.RATE_LIMITED

    def test_classify_401_is_auth_failure(self):
        error = Mock()
        error.code = 401
        assert classify_error(error) == ErrorCategory.AUTH_FAILURE

    def test_classify_400_is_permanent(self):
        error = Mock()
        error.code = 400
        assert classify_error(error) == ErrorCategory.PERMANENT

    def test_classify_503_is_transient(self):
        error = Mock()
        error.code = 503
        assert classify_error(error) == ErrorCategory.TRANSIENT

    def test_classify_response_status_code(self):
        """requests/httpx errors carry the status on .response."""
        error = Exception("boom")
        error.response = Mock(status_code=429, headers={})
        assert classify_error(error) == ErrorCategory.RATE_LIMITED

    def test_classify_grpc_code(self):
        error = Exception("resource exhausted")
        error.grpc_status_code = 8
        assert classify_error(error) == ErrorCategory.RATE_LIMITED

    def test_classify_connection_error_is_transient(self):
        assert classify_error(ConnectionError("Connection refused")) == ErrorCategory.TRANSIENT

    def test_classify_error_from_message(self):
        assert classify_error(Exception("Server returned 503 Service Unavailable")) == ErrorCategory.TRANSIENT

    def test_classify_ignores_codes_inside_longer_numbers(self):
        assert classify_error(Exception("request id 94001 failed")) == ErrorCategory.TRANSIENT

    def test_classify_json_decode_error_is_permanent(self):
        import json
        error = json.JSONDecodeError("Invalid JSON", "", 0)
        assert classify_error(error) == ErrorCategory.PERMANENT

    def test_classify_unknown_error_is_transient(self):
        assert classify_error(Exception("Something unexpected")) == ErrorCategory.TRANSIENT


class TestToProviderError:
    """Tests for wrapping client errors in the ProviderError taxonomy."""

    def test_rate_limited_with_retry_after(self):
        error = Exception("too many")
        error.response = Mock(status_code=429, headers={"Retry-After": "7"})
        err = to_provider_error(error, "test")
        assert isinstance(err, RateLimitedError)
        assert err.retry_after == 7.0
        assert err.retryable

    def test_auth_failure_is_terminal(self):
        error = Mock()
        error.code = 403
        err = to_provider_error(error)
        assert isinstance(err, InvalidInputError)
        assert not err.retryable

    def test_timeout(self):
        err = to_provider_error(TimeoutError("read timed out"))
        assert isinstance(err, ProviderTimeoutError)
        assert err.retryable

    def test_timeout_with_duration_in_message_stays_retryable(self):
        """'4000 ms' does not read as HTTP 400."""
        err = to_provider_error(TimeoutError("read timed out after 4000 ms"))
        assert isinstance(err, ProviderTimeoutError)
        assert err.retryable

    def test_server_error_is_unavailable(self):
        error = Mock()
        error.code = 500
        assert isinstance(to_provider_error(error), UnavailableError)

    def test_provider_error_passes_through(self):
        original = InvalidInputError("bad")
        assert to_provider_error(original) is original


class TestBackoff:
    """Tests for backoff delays."""

    def test_exponential_without_jitter(self):
        assert [backoff_delay(a, 1.0) for a in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_jitter_stays_in_bounds(self):
        rng = random.Random(42)
        for attempt in range(5):
            d = backoff_delay(attempt, 2.0, jitter=0.25, rng=rng)
            base = 2.0 * 2 ** attempt
            assert base * 0.75 <= d <= base * 1.25

    def test_retry_after_is_a_floor(self):
        assert backoff_delay(0, 1.0, retry_after=30.0) == 30.0
        assert backoff_delay(3, 10.0, retry_after=1.0) == 80.0


class TestRetryPolicy:
    """Tests for RetryPolicy.call."""

    def _policy(self, sleeps: list[float], max_retries: int = 3) -> RetryPolicy:
        return RetryPolicy(max_retries=max_retries, backoff_base_s=1.0, jitter=0.0, sleep=sleeps.append)

    def test_retries_transient_then_succeeds(self):
        sleeps: list[float] = []
        fn = Mock(side_effect=[ConnectionError("reset"), ConnectionError("reset"), "ok"])
        assert self._policy(sleeps).call(fn, "x") == "ok"
        assert fn.call_count == 3
        assert sleeps == [1.0, 2.0]

    def test_permanent_is_not_retried(self):
        sleeps: list[float] = []
        fn = Mock(side_effect=ValueError("400 Bad Request"))
        with pytest.raises(InvalidInputError):
            self._policy(sleeps).call(fn)
        assert fn.call_count == 1
        assert sleeps == []

    def test_gives_up_after_max_retries(self):
        sleeps: list[float] = []
        fn = Mock(side_effect=ConnectionError("refused"))
        with pytest.raises(UnavailableError):
            self._policy(sleeps, max_retries=2).call(fn)
        assert fn.call_count == 3
        assert len(sleeps) == 2

    def test_rate_limited_honours_retry_after(self):
        sleeps: list[float] = []
        fn = Mock(side_effect=[RateLimitedError("slow down", retry_after=12.0), "ok"])
        assert self._policy(sleeps).call(fn) == "ok"
        assert sleeps == [12.0]

    def test_before_attempt_runs_every_attempt(self):
        sleeps: list[float] = []
        before = Mock()
        fn = Mock(side_effect=[ConnectionError("reset"), "ok"])
        self._policy(sleeps).call(fn, before_attempt=before)
        assert before.call_count == 2

    def test_extraction_errors_propagate_untouched(self):
        sleeps: list[float] = []
        fn = Mock(side_effect=CorruptContentError("bad bytes"))
        with pytest.raises(CorruptContentError):
            self._policy(sleeps).call(fn)
        assert fn.call_count == 1

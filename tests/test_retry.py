"""Tests for anonymizer/ml/retry.py.

Covers:
  - Error classification: retryable vocabulary, fatal vocabulary, fatal wins,
    unknown errors are not retried, timeouts retryable by type, status codes
    only in an http/status context
  - compute_delay_ms: exponential growth, cap, no delay before attempt 1
  - next_state: every valid transition and rejection of invalid ones
  - with_retry: success after transient failures, exhaustion, fatal stop,
    unknown error stop, CancelledError propagation
  - Only exception class names reach the log
"""
from __future__ import annotations

import asyncio
import logging

import pytest

from anonymizer.ml.ner_model import InferenceTimeoutError, NerServiceError
from anonymizer.ml.retry import (
    RetryConfig,
    RetryEvent,
    RetryState,
    compute_delay_ms,
    is_fatal_error,
    is_retryable_error,
    next_state,
    with_retry,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _failing(errors: list[BaseException], result: object = "ok"):
    """Operation raising each error in turn, then returning *result*."""
    remaining = list(errors)
    calls = {"count": 0}

    async def _operation():
        calls["count"] += 1
        if remaining:
            raise remaining.pop(0)
        return result

    return _operation, calls


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

class TestErrorClassification:
    @pytest.mark.parametrize("error", [
        TimeoutError("request timed out"),
        ConnectionError("connection refused"),
        RuntimeError("model not ready"),
        RuntimeError("HTTP 503 service unavailable"),
        RuntimeError("rate limit exceeded"),
    ])
    def test_retryable(self, error: Exception) -> None:
        assert is_retryable_error(error) is True
        assert is_fatal_error(error) is False

    @pytest.mark.parametrize("error", [
        RuntimeError("model corrupted"),
        MemoryError("out of memory"),
        ValueError("invalid input"),
        RuntimeError("HTTP 404"),
    ])
    def test_fatal(self, error: Exception) -> None:
        assert is_fatal_error(error) is True
        assert is_retryable_error(error) is False

    def test_fatal_wins_over_retryable(self) -> None:
        error = RuntimeError("timeout while loading: model corrupted")
        assert is_fatal_error(error) is True
        assert is_retryable_error(error) is False

    def test_unknown_error_is_not_retryable(self) -> None:
        error = ValueError("something odd")
        assert is_retryable_error(error) is False
        assert is_fatal_error(error) is False

    @pytest.mark.parametrize("error", [
        InferenceTimeoutError("inference timed out after 400.0s"),
        TimeoutError("gave up after 404 ms"),
        NerServiceError("Cannot open connection to NER service at http://ner:8400"),
        ConnectionError("connection reset by 10.0.4.22"),
    ])
    def test_numbers_outside_status_context_are_ignored(self, error: Exception) -> None:
        assert is_fatal_error(error) is False
        assert is_retryable_error(error) is True

    @pytest.mark.parametrize("message", ["status: 401", "HTTP 422", "status=403"])
    def test_status_code_in_context_is_fatal(self, message: str) -> None:
        assert is_fatal_error(NerServiceError(message)) is True

    def test_oom_needs_word_boundary(self) -> None:
        assert is_fatal_error(RuntimeError("CUDA OOM")) is True
        assert is_fatal_error(RuntimeError("no room in zoom buffer")) is False

    def test_class_name_is_classified(self) -> None:
        class NetworkGlitch(Exception):
            pass

        assert is_retryable_error(NetworkGlitch("")) is True


# ---------------------------------------------------------------------------
# Delays and transitions
# ---------------------------------------------------------------------------

class TestComputeDelay:
    def test_first_attempt_not_delayed(self) -> None:
        assert compute_delay_ms(1, RetryConfig()) == 0.0

    def test_exponential(self) -> None:
        config = RetryConfig(initial_delay_ms=100, backoff_multiplier=2.0)
        assert [compute_delay_ms(a, config) for a in (2, 3, 4)] == [100.0, 200.0, 400.0]

    def test_capped(self) -> None:
        config = RetryConfig(initial_delay_ms=100, backoff_multiplier=10.0, max_delay_ms=500)
        assert compute_delay_ms(4, config) == 500.0


class TestRetryConfig:
    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError):
            RetryConfig(max_retries=0)

    def test_rejects_negative_delay(self) -> None:
        with pytest.raises(ValueError):
            RetryConfig(initial_delay_ms=-1)


class TestNextState:
    def test_success(self) -> None:
        assert next_state(RetryState.ATTEMPTING, RetryEvent.SUCCESS, 1, 3) == RetryState.SUCCEEDED

    def test_fatal(self) -> None:
        assert next_state(RetryState.ATTEMPTING, RetryEvent.FATAL_ERROR, 1, 3) == RetryState.FAILED_FATAL

    def test_retryable_with_attempts_left(self) -> None:
        assert next_state(RetryState.ATTEMPTING, RetryEvent.RETRYABLE_ERROR, 2, 3) == RetryState.BACKING_OFF

    def test_retryable_exhausted(self) -> None:
        state = next_state(RetryState.ATTEMPTING, RetryEvent.RETRYABLE_ERROR, 3, 3)
        assert state == RetryState.FAILED_RETRYABLE_EXHAUSTED

    def test_backoff_elapsed(self) -> None:
        assert next_state(RetryState.BACKING_OFF, RetryEvent.DELAY_ELAPSED, 1, 3) == RetryState.ATTEMPTING

    @pytest.mark.parametrize("state,event", [
        (RetryState.SUCCEEDED, RetryEvent.SUCCESS),
        (RetryState.FAILED_FATAL, RetryEvent.DELAY_ELAPSED),
        (RetryState.BACKING_OFF, RetryEvent.SUCCESS),
        (RetryState.ATTEMPTING, RetryEvent.DELAY_ELAPSED),
    ])
    def test_invalid_transitions_raise(self, state: RetryState, event: RetryEvent) -> None:
        with pytest.raises(ValueError):
            next_state(state, event, 1, 3)


# ---------------------------------------------------------------------------
# with_retry
# ---------------------------------------------------------------------------

class TestWithRetry:
    def test_immediate_success(self) -> None:
        operation, calls = _failing([])
        sleep = _RecordingSleep()
        outcome = asyncio.run(with_retry(operation, RetryConfig(), sleep=sleep))

        assert outcome.success is True
        assert outcome.result == "ok"
        assert outcome.attempts == 1
        assert outcome.final_state == RetryState.SUCCEEDED
        assert sleep.calls == []
        assert calls["count"] == 1

    def test_success_after_transient_failures(self) -> None:
        operation, calls = _failing([TimeoutError("timed out"), ConnectionError("connection reset")])
        sleep = _RecordingSleep()
        outcome = asyncio.run(with_retry(operation, RetryConfig(max_retries=3), sleep=sleep))

        assert outcome.success is True
        assert outcome.attempts == 3
        assert outcome.delays_ms == [100.0, 200.0]
        assert sleep.calls == pytest.approx([0.1, 0.2])
        assert outcome.total_duration_ms >= 0.0

    def test_exhausted(self) -> None:
        errors = [TimeoutError("timed out") for _ in range(5)]
        operation, calls = _failing(errors)
        outcome = asyncio.run(with_retry(operation, RetryConfig(max_retries=3), sleep=_RecordingSleep()))

        assert outcome.success is False
        assert outcome.attempts == 3
        assert calls["count"] == 3
        assert outcome.final_state == RetryState.FAILED_RETRYABLE_EXHAUSTED
        assert isinstance(outcome.error, TimeoutError)

    def test_fatal_error_is_not_retried(self) -> None:
        operation, calls = _failing([MemoryError("out of memory")])
        sleep = _RecordingSleep()
        outcome = asyncio.run(with_retry(operation, RetryConfig(max_retries=5), sleep=sleep))

        assert outcome.success is False
        assert outcome.attempts == 1
        assert outcome.final_state == RetryState.FAILED_FATAL
        assert sleep.calls == []

    def test_unknown_error_is_not_retried(self) -> None:
        operation, calls = _failing([ValueError("something odd")])
        outcome = asyncio.run(with_retry(operation, RetryConfig(max_retries=5), sleep=_RecordingSleep()))

        assert outcome.attempts == 1
        assert outcome.final_state == RetryState.FAILED_FATAL

    def test_cancelled_error_propagates(self) -> None:
        async def _operation():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(with_retry(_operation, RetryConfig(), sleep=_RecordingSleep()))

    def test_error_message_never_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        operation, _ = _failing([TimeoutError("timeout for Hans Muster 756.1234.5678.97")] * 3)
        with caplog.at_level(logging.DEBUG, logger="anonymizer.ml.retry"):
            asyncio.run(with_retry(operation, RetryConfig(max_retries=3), sleep=_RecordingSleep()))

        assert "Hans Muster" not in caplog.text
        assert "756.1234" not in caplog.text
        assert "TimeoutError" in caplog.text

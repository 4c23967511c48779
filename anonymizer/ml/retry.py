"""Retry wrapper for transient inference failures.

Classifies exceptions into retryable and non-retryable categories and
retries only the former, with exponential back-off.

Timeouts (any ``TimeoutError``, including ``InferenceTimeoutError``) are
retryable by type.  Everything else is classified by pattern match on the
lowercase ``"<ExceptionClass>: <message>"``.  HTTP status codes only count
when they follow ``http`` or ``status``, so a port number or a duration in
a message never decides the outcome.

Error categories
----------------
FATAL      : corrupted / missing model, out-of-memory, invalid input,
             programming errors, 4xx client errors; never retried.
             Checked first: a fatal match wins over any retryable match.
RETRYABLE  : timeouts, network / connection errors, model warming up,
             rate limiting, 5xx gateway errors.
(neither)  : treated as non-retryable (fail-safe).

The control flow is an explicit state machine so that it can be tested
without any I/O::

    ATTEMPTING --success--------------------------> SUCCEEDED
    ATTEMPTING --fatal error----------------------> FAILED_FATAL
    ATTEMPTING --retryable error, attempts left---> BACKING_OFF
    ATTEMPTING --retryable error, none left-------> FAILED_RETRYABLE_EXHAUSTED
    BACKING_OFF --delay elapsed-------------------> ATTEMPTING

Safety rule: error messages can echo model input, so only the exception
class name and the attempt counters are logged.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)

RETRYABLE_TYPES: tuple[type[BaseException], ...] = (TimeoutError,)

FATAL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern)
    for pattern in (
        r"invalid input",
        r"model not found",
        r"corrupted",
        r"out of memory",
        r"\boom\b",
        r"syntax error",
        r"type error",
        r"reference error",
        r"invalid configuration",
        r"missing required",
        r"unsupported",
        r"\b(?:http|status)[\s:=]*4(?:00|01|03|04|05|22)\b",
    )
)

RETRYABLE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern)
    for pattern in (
        r"timeout",
        r"timed out",
        r"network",
        r"connection",
        r"econnrefused",
        r"econnreset",
        r"enotfound",
        r"model not ready",
        r"model loading",
        r"temporar(?:y|ily)",
        r"rate limit",
        r"too many requests",
        r"\b(?:http|status)[\s:=]*(?:429|502|503|504)\b",
        r"service unavailable",
        r"bad gateway",
        r"gateway timeout",
    )
)


class RetryState(StrEnum):
    ATTEMPTING = "attempting"
    BACKING_OFF = "backing_off"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE_EXHAUSTED = "failed_retryable_exhausted"
    FAILED_FATAL = "failed_fatal"


class RetryEvent(StrEnum):
    SUCCESS = "success"
    RETRYABLE_ERROR = "retryable_error"
    FATAL_ERROR = "fatal_error"
    DELAY_ELAPSED = "delay_elapsed"


TERMINAL_STATES: frozenset[RetryState] = frozenset({
    RetryState.SUCCEEDED,
    RetryState.FAILED_RETRYABLE_EXHAUSTED,
    RetryState.FAILED_FATAL,
})


@dataclass(slots=True)
class RetryConfig:
    max_retries: int = 3
    initial_delay_ms: int = 100
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 5000

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1; got {self.max_retries}")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("retry delays must be non-negative")


@dataclass
class RetryOutcome:
    """Result of ``with_retry``; always reports attempts and elapsed time."""

    success: bool
    attempts: int
    total_duration_ms: float
    final_state: RetryState
    result: Any = None
    error: BaseException | None = None
    delays_ms: list[float] = field(default_factory=list)


def _error_text(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}".lower()


def is_fatal_error(error: BaseException) -> bool:
    if isinstance(error, RETRYABLE_TYPES):
        return False
    text = _error_text(error)
    return any(pattern.search(text) for pattern in FATAL_PATTERNS)


def is_retryable_error(error: BaseException) -> bool:
    """Return True only for timeouts and errors matching the transient vocabulary.

    Fatal patterns are checked before the transient ones and always win.
    Errors matching neither list are not retried.
    """
    if isinstance(error, RETRYABLE_TYPES):
        return True
    if is_fatal_error(error):
        return False
    text = _error_text(error)
    return any(pattern.search(text) for pattern in RETRYABLE_PATTERNS)


def compute_delay_ms(attempt: int, config: RetryConfig) -> float:
    """Delay before *attempt* (1-based).  The first attempt is never delayed."""
    if attempt < 2:
        return 0.0
    delay = config.initial_delay_ms * (config.backoff_multiplier ** (attempt - 2))
    return float(min(delay, config.max_delay_ms))


def next_state(
    state: RetryState,
    event: RetryEvent,
    attempt: int,
    max_retries: int,
) -> RetryState:
    """Pure transition function of the retry state machine.

    Raises
    ------
    ValueError
        If *event* is not valid in *state* (including any event in a
        terminal state).
    """
    if state == RetryState.ATTEMPTING:
        if event == RetryEvent.SUCCESS:
            return RetryState.SUCCEEDED
        if event == RetryEvent.FATAL_ERROR:
            return RetryState.FAILED_FATAL
        if event == RetryEvent.RETRYABLE_ERROR:
            if attempt < max_retries:
                return RetryState.BACKING_OFF
            return RetryState.FAILED_RETRYABLE_EXHAUSTED
    elif state == RetryState.BACKING_OFF and event == RetryEvent.DELAY_ELAPSED:
        return RetryState.ATTEMPTING
    raise ValueError(f"invalid retry transition: {state} --{event}-->")


async def with_retry(
    operation: Callable[[], Awaitable[Any]],
    config: RetryConfig | None = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryOutcome:
    """Run *operation* until it succeeds, fails fatally, or attempts run out.

    Parameters
    ----------
    operation:
        Zero-argument coroutine factory; called once per attempt.
    config:
        Retry policy.  ``max_retries`` is the total number of attempts.
    sleep:
        Awaitable sleep taking seconds; injectable for tests.

    Returns
    -------
    RetryOutcome
        Never raises for operation errors; the last error is returned in
        ``error``.  ``asyncio.CancelledError`` propagates.
    """
    config = config if config is not None else RetryConfig()
    state = RetryState.ATTEMPTING
    attempt = 0
    delays: list[float] = []
    last_error: BaseException | None = None
    started = time.monotonic()

    while state not in TERMINAL_STATES:
        if state == RetryState.BACKING_OFF:
            delay_ms = compute_delay_ms(attempt + 1, config)
            delays.append(delay_ms)
            await sleep(delay_ms / 1000.0)
            state = next_state(state, RetryEvent.DELAY_ELAPSED, attempt, config.max_retries)
            continue

        attempt += 1
        try:
            result = await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last_error = exc
            event = RetryEvent.RETRYABLE_ERROR if is_retryable_error(exc) else RetryEvent.FATAL_ERROR
            state = next_state(state, event, attempt, config.max_retries)
            logger.debug(
                "retry: attempt=%d/%d error_type=%s next_state=%s",
                attempt,
                config.max_retries,
                type(exc).__name__,
                state,
            )
            continue

        state = next_state(state, RetryEvent.SUCCESS, attempt, config.max_retries)
        elapsed_ms = (time.monotonic() - started) * 1000
        if attempt > 1:
            logger.info("retry: succeeded after attempts=%d duration_ms=%.1f", attempt, elapsed_ms)
        return RetryOutcome(
            success=True,
            attempts=attempt,
            total_duration_ms=elapsed_ms,
            final_state=state,
            result=result,
            delays_ms=delays,
        )

    elapsed_ms = (time.monotonic() - started) * 1000
    logger.warning(
        "retry: giving up state=%s attempts=%d duration_ms=%.1f error_type=%s",
        state,
        attempt,
        elapsed_ms,
        type(last_error).__name__ if last_error else None,
    )
    return RetryOutcome(
        success=False,
        attempts=attempt,
        total_duration_ms=elapsed_ms,
        final_state=state,
        error=last_error,
        delays_ms=delays,
    )

"""Inference telemetry: bounded, content-free metric records.

``InferenceMetric`` is built from numbers, booleans and closed-vocabulary
tags only, so it cannot carry document or entity text.  The collector
keeps the most recent records in a ring buffer and exposes a pull-based
aggregate snapshot; individual records are never exported.

Handled error paths (skipped chunks, fatal model errors, classification
fallbacks) are counted with ``increment`` so that nothing is dropped
silently.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any

from anonymizer.pii.entities import DocumentType

logger = logging.getLogger(__name__)

DEFAULT_RETENTION: int = 1000

LANGUAGE_CODES: frozenset[str] = frozenset({"en", "de", "fr", "it", "unknown"})
PLATFORM_TAGS: frozenset[str] = frozenset({"server", "desktop", "cli", "test"})

# Counters the pipeline increments on handled failures.
COUNTER_CHUNK_SKIPPED = "chunk_inference_skipped"
COUNTER_MODEL_FATAL = "model_fatal_error"
COUNTER_MODEL_INPUT_REJECTED = "model_input_rejected"
COUNTER_CLASSIFICATION_FAILED = "classification_failed"
COUNTER_RULE_ENGINE_FAILED = "rule_engine_failed"
COUNTER_RUN_CANCELLED = "run_cancelled"


@dataclass(frozen=True, slots=True)
class InferenceMetric:
    """One inference run, described without any content."""

    duration_ms: float
    text_length: int
    token_estimate: int
    entity_count: int
    document_type: DocumentType = DocumentType.UNKNOWN
    language: str = "unknown"
    platform: str = "server"
    chunk_count: int = 1
    chunked: bool = False
    failed: bool = False
    retry_attempts: int = 0
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if not isinstance(self.document_type, DocumentType):
            raise ValueError(f"document_type must be a DocumentType; got {type(self.document_type).__name__}")
        if self.language not in LANGUAGE_CODES:
            raise ValueError(f"unknown language code: {self.language!r}")
        if self.platform not in PLATFORM_TAGS:
            raise ValueError(f"unknown platform tag: {self.platform!r}")
        for name in ("duration_ms", "text_length", "token_estimate", "entity_count", "chunk_count", "retry_attempts"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")


def percentile(sorted_values: list[float], p: float) -> float:
    """Nearest-rank percentile over an ascending list; 0.0 when empty."""
    if not sorted_values:
        return 0.0
    index = math.ceil(p / 100.0 * len(sorted_values)) - 1
    index = max(0, min(index, len(sorted_values) - 1))
    return sorted_values[index]


class MetricsCollector:
    """Thread-safe ring buffer of ``InferenceMetric`` plus handled-error counters."""

    def __init__(self, retention: int = DEFAULT_RETENTION) -> None:
        if retention < 1:
            raise ValueError(f"retention must be >= 1; got {retention}")
        self._records: deque[InferenceMetric] = deque(maxlen=retention)
        self._counters: Counter[str] = Counter()
        self._lock = threading.Lock()

    @property
    def retention(self) -> int:
        return self._records.maxlen or 0

    def record(self, metric: InferenceMetric) -> None:
        """Append *metric*; the oldest record is evicted once full."""
        with self._lock:
            self._records.append(metric)

    def increment(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[counter] += amount
        logger.debug("metrics: counter=%s amount=%d", counter, amount)

    def counter(self, name: str) -> int:
        with self._lock:
            return self._counters[name]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def aggregate(self) -> dict[str, Any]:
        """Summary statistics over the retained records.

        Returns
        -------
        dict
            ``count``, ``failed``, duration ``mean`` / ``p50`` / ``p95`` /
            ``p99`` / ``min`` / ``max``, mean text length, token estimate
            and entity count, ``chunked`` count, record counts
            ``by_document_type`` and ``by_language``, and ``counters``.
        """
        with self._lock:
            records = list(self._records)
            counters = dict(self._counters)

        count = len(records)
        durations = sorted(r.duration_ms for r in records)

        def _mean(values: list[float]) -> float:
            return sum(values) / len(values) if values else 0.0

        return {
            "count": count,
            "failed": sum(1 for r in records if r.failed),
            "chunked": sum(1 for r in records if r.chunked),
            "mean": _mean(durations),
            "p50": percentile(durations, 50),
            "p95": percentile(durations, 95),
            "p99": percentile(durations, 99),
            "min": durations[0] if durations else 0.0,
            "max": durations[-1] if durations else 0.0,
            "mean_text_length": _mean([r.text_length for r in records]),
            "mean_token_estimate": _mean([r.token_estimate for r in records]),
            "mean_entity_count": _mean([r.entity_count for r in records]),
            "by_document_type": dict(Counter(str(r.document_type) for r in records)),
            "by_language": dict(Counter(r.language for r in records)),
            "counters": counters,
        }

    def export(self) -> dict[str, Any]:
        """JSON-serialisable snapshot of the aggregate (never raw records)."""
        snapshot = self.aggregate()
        snapshot["retention"] = self.retention
        return snapshot

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._counters.clear()


_collector: MetricsCollector | None = None
_collector_lock = threading.Lock()


def get_metrics_collector() -> MetricsCollector:
    """Return the process-wide collector, creating it on first use."""
    global _collector
    if _collector is None:
        with _collector_lock:
            if _collector is None:
                from anonymizer.core.settings import get_settings

                _collector = MetricsCollector(retention=get_settings().metrics_retention)
    return _collector


def _reset_metrics_collector() -> None:
    """Drop the process-wide collector.  Test hook only."""
    global _collector
    with _collector_lock:
        _collector = None

"""High-recall candidate generation.

Two independent detectors feed one intentionally noisy candidate set:

1. ``PatternDetector``: deterministic Swiss/EU pattern recognisers over the
   whole text.
2. The statistical NER model: one call per ``chunk_text`` window, sent
   through the ``InferenceWorker`` and wrapped by ``with_retry``.

Overlap resolution
------------------
- Within one detector the longer span wins (ties: higher confidence, then
  earlier start).
- A model span overlapping a pattern span is merged into it: source BOTH,
  union span, maximum confidence, the pattern's entity type.
- Everything else keeps its PATTERN or MODEL tag.

Failure handling
----------------
- A chunk rejected by ``validate_model_input`` skips only its model call.
- A chunk whose retries run out contributes pattern candidates only; its
  index is reported in ``CandidateResult.skipped_chunks``.
- A fatal model error (corrupted model, out of memory) stops every further
  model call and raises ``FatalInferenceError`` carrying the pattern-only
  partial result.

Safety rule: entity text is never logged, only types and counts.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from anonymizer.core.cancellation import CancellationToken
from anonymizer.ml.chunker import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_OVERLAP_TOKENS,
    ChunkPrediction,
    TextChunk,
    chunk_text,
    merge_chunk_predictions,
)
from anonymizer.ml.input_validator import validate_model_input
from anonymizer.ml.metrics import (
    COUNTER_CHUNK_SKIPPED,
    COUNTER_MODEL_INPUT_REJECTED,
    MetricsCollector,
)
from anonymizer.ml.retry import RetryConfig, RetryState, is_fatal_error, with_retry
from anonymizer.ml.subword_merger import merge_subword_tokens
from anonymizer.ml.worker import InferenceWorker
from anonymizer.pii.deny_list import DenyList
from anonymizer.pii.entities import DetectionSource, Entity, EntityType
from anonymizer.pii.pattern_detector import PatternDetector

logger = logging.getLogger(__name__)

DEFAULT_ML_THRESHOLD: float = 0.3

# Model label -> entity type.  Labels not listed (MISC, ...) are dropped.
ML_LABEL_MAP: dict[str, EntityType] = {
    "PER": EntityType.PERSON,
    "PERSON": EntityType.PERSON,
    "ORG": EntityType.ORGANIZATION,
    "ORGANIZATION": EntityType.ORGANIZATION,
    "LOC": EntityType.LOCATION,
    "LOCATION": EntityType.LOCATION,
    "GPE": EntityType.LOCATION,
}


class FatalInferenceError(RuntimeError):
    """The model failed in a way retries cannot fix.

    ``partial`` holds the candidates computed before the failure (pattern
    candidates for the whole text, model candidates of finished chunks).
    """

    def __init__(self, message: str, partial: CandidateResult) -> None:
        super().__init__(message)
        self.partial = partial


@dataclass
class CandidateResult:
    entities: list[Entity] = field(default_factory=list)
    chunk_count: int = 0
    skipped_chunks: list[int] = field(default_factory=list)
    rejected_chunks: list[int] = field(default_factory=list)
    retry_attempts: int = 0
    model_used: bool = False
    cancelled: bool = False


@dataclass
class _RunState:
    """Per-run flags shared by the concurrently running chunk tasks."""

    cancel: CancellationToken | None
    fatal_error: BaseException | None = None
    retry_attempts: int = 0

    @property
    def halted(self) -> bool:
        return self.fatal_error is not None or (self.cancel is not None and self.cancel.cancelled)


def map_model_label(label: str) -> EntityType | None:
    return ML_LABEL_MAP.get(label.upper())


# ---------------------------------------------------------------------------
# Overlap resolution
# ---------------------------------------------------------------------------

def resolve_same_source(entities: list[Entity]) -> list[Entity]:
    """Keep the longer of any two overlapping spans from one detector."""
    ranked = sorted(entities, key=lambda e: (-e.length, -e.confidence, e.start))
    kept: list[Entity] = []
    for entity in ranked:
        if any(entity.overlaps(other) for other in kept):
            continue
        kept.append(entity)
    kept.sort(key=lambda e: (e.start, e.end))
    return kept


def _overlap_size(a: Entity, b: Entity) -> int:
    return min(a.end, b.end) - max(a.start, b.start)


def merge_detector_outputs(
    pattern_entities: list[Entity],
    model_entities: list[Entity],
    text: str,
) -> list[Entity]:
    """Combine the two detectors' (already self-consistent) outputs.

    A model entity overlapping one or more pattern entities is folded into
    the pattern entity it overlaps most.
    """
    merged = list(pattern_entities)
    for model_entity in model_entities:
        overlapping = [p for p in merged if p.overlaps(model_entity)]
        if not overlapping:
            merged.append(model_entity)
            continue

        target = max(overlapping, key=lambda p: (_overlap_size(p, model_entity), p.length))
        target.start = min(target.start, model_entity.start)
        target.end = max(target.end, model_entity.end)
        target.text = text[target.start:target.end]
        target.set_confidence(max(target.confidence, model_entity.confidence))
        target.source = DetectionSource.BOTH
        target.metadata["model_label"] = model_entity.metadata.get("model_label")

    merged.sort(key=lambda e: (e.start, e.end))
    return merged


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class CandidateGenerator:
    """High-recall pass: pattern detector plus optional statistical model.

    Parameters
    ----------
    pattern_detector:
        Shared, stateless pattern detector.
    worker:
        Background inference worker, or None to run patterns only.
    ml_threshold:
        Model predictions scoring below this are dropped.
    retry_config:
        Policy for each chunk's model call.
    inference_timeout_s:
        Per-attempt timeout; an expired attempt counts as retryable.
    deny_list:
        Known false positives removed after merging.
    metrics:
        Collector for handled-error counters; optional.
    """

    def __init__(
        self,
        pattern_detector: PatternDetector | None = None,
        worker: InferenceWorker | None = None,
        *,
        ml_threshold: float = DEFAULT_ML_THRESHOLD,
        chunk_max_tokens: int = DEFAULT_MAX_TOKENS,
        chunk_overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
        retry_config: RetryConfig | None = None,
        inference_timeout_s: float | None = 30.0,
        deny_list: DenyList | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._patterns = pattern_detector if pattern_detector is not None else PatternDetector()
        self._worker = worker
        self._ml_threshold = ml_threshold
        self._chunk_max_tokens = chunk_max_tokens
        self._chunk_overlap_tokens = chunk_overlap_tokens
        self._retry_config = retry_config if retry_config is not None else RetryConfig()
        self._timeout = inference_timeout_s
        self._deny_list = deny_list if deny_list is not None else DenyList.load()
        self._metrics = metrics

    async def generate(
        self,
        text: str,
        *,
        language: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> CandidateResult:
        """Return candidate entities for *text*, ordered by position.

        Raises
        ------
        FatalInferenceError
            When the model fails fatally.  ``exc.partial`` carries the
            candidates computed so far.
        """
        result = CandidateResult()
        pattern_entities = resolve_same_source(self._patterns.detect(text))

        model_entities: list[Entity] = []
        state = _RunState(cancel=cancel)
        if self._worker is not None and text:
            result.model_used = True
            model_entities = await self._run_model(text, result, state)
            result.retry_attempts = state.retry_attempts

        result.entities = self._finalise(pattern_entities, model_entities, text, language)
        result.cancelled = cancel is not None and cancel.cancelled

        logger.info(
            "candidates: pattern=%d model=%d final=%d chunks=%d skipped=%d",
            len(pattern_entities),
            len(model_entities),
            len(result.entities),
            result.chunk_count,
            len(result.skipped_chunks),
        )

        if state.fatal_error is not None:
            raise FatalInferenceError(
                f"fatal model error: {type(state.fatal_error).__name__}", result
            ) from state.fatal_error
        return result

    # ------------------------------------------------------------------

    def _finalise(
        self,
        pattern_entities: list[Entity],
        model_entities: list[Entity],
        text: str,
        language: str | None,
    ) -> list[Entity]:
        merged = merge_detector_outputs(pattern_entities, model_entities, text)
        kept = [e for e in merged if not self._deny_list.is_denied(e.text, e.type, language)]
        if len(kept) != len(merged):
            logger.debug("candidates: deny list removed=%d", len(merged) - len(kept))
        return kept

    async def _run_model(self, text: str, result: CandidateResult, state: _RunState) -> list[Entity]:
        chunks = chunk_text(text, self._chunk_max_tokens, self._chunk_overlap_tokens)
        result.chunk_count = len(chunks)

        outcomes = await asyncio.gather(*(self._infer_chunk(chunk, result, state) for chunk in chunks))
        chunk_predictions = [p for p in outcomes if p is not None]
        if not chunk_predictions:
            return []

        predictions = merge_chunk_predictions(chunk_predictions, chunks)
        entities = [e for e in (self._to_entity(p, text) for p in predictions) if e is not None]
        return resolve_same_source(entities)

    async def _infer_chunk(
        self,
        chunk: TextChunk,
        result: CandidateResult,
        state: _RunState,
    ) -> ChunkPrediction | None:
        if state.halted:
            return None

        validation = validate_model_input(chunk.text)
        if not validation.valid:
            result.rejected_chunks.append(chunk.index)
            self._increment(COUNTER_MODEL_INPUT_REJECTED)
            logger.warning("candidates: chunk=%d rejected by input validation", chunk.index)
            return None

        async def _attempt() -> list[dict[str, Any]] | None:
            # Re-checked per attempt: a fatal error elsewhere stops retries here too.
            if state.halted:
                return None
            return await self._worker.infer(chunk.text, timeout=self._timeout)

        outcome = await with_retry(_attempt, self._retry_config)
        state.retry_attempts += max(0, outcome.attempts - 1)

        if outcome.success:
            if outcome.result is None:
                return None
            merged = merge_subword_tokens(outcome.result, chunk.text)
            return ChunkPrediction(chunk_index=chunk.index, predictions=merged)

        if outcome.final_state == RetryState.FAILED_FATAL and is_fatal_error(outcome.error):
            if state.fatal_error is None:
                state.fatal_error = outcome.error
            logger.error(
                "candidates: fatal model error on chunk=%d error_type=%s; model calls stopped",
                chunk.index,
                type(outcome.error).__name__,
            )
            return None

        result.skipped_chunks.append(chunk.index)
        self._increment(COUNTER_CHUNK_SKIPPED)
        logger.warning(
            "candidates: chunk=%d skipped after attempts=%d state=%s error_type=%s",
            chunk.index,
            outcome.attempts,
            outcome.final_state,
            type(outcome.error).__name__,
        )
        return None

    def _to_entity(self, prediction: dict[str, Any], text: str) -> Entity | None:
        score = float(prediction.get("score", 0.0))
        if score < self._ml_threshold:
            return None
        entity_type = map_model_label(str(prediction.get("entity_group", "")))
        if entity_type is None:
            return None
        start, end = int(prediction["start"]), int(prediction["end"])
        if not 0 <= start < end <= len(text):
            return None
        return Entity(
            type=entity_type,
            start=start,
            end=end,
            text=text[start:end],
            confidence=score,
            source=DetectionSource.MODEL,
            metadata={"model_label": prediction["entity_group"]},
        )

    def _increment(self, counter: str) -> None:
        if self._metrics is not None:
            self._metrics.increment(counter)

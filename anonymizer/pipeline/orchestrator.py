"""Pipeline orchestrator: run every detection pass over one document.

Pass order
----------
1. CandidateGenerator     pattern detector + statistical model (chunked,
                          retried, on the background worker)
2. FormatValidationPass   per-type validators from the registry
3. ContextScorer          keyword / related / position / repetition factors
4. DocumentClassifier     document type and language
5. RuleEngine             type-specific extraction merged into the set
6. AddressLinker          components grouped into composite addresses
7. AddressScorer          one confidence and decision per address

Passes run strictly in this order; each consumes the entity list the
previous one left behind.  The run owns its entity list exclusively.

Failure handling
----------------
- A fatal model error keeps the pattern candidates; the run is PARTIAL.
- Chunks skipped after exhausted retries make the run PARTIAL.
- A classification failure falls back to ``unknown`` (baseline rules).
- A rule-engine failure retries with the baseline rules, then keeps the
  entities as they were.
- Cancellation is checked between passes; the entities finalised so far
  are returned.

Every handled failure increments a metrics counter and adds a reason to
``PipelineResult.partial_reasons``; any reason makes the run PARTIAL.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import StrEnum

from anonymizer.address.linker import AddressLinker
from anonymizer.address.scorer import AddressScorer
from anonymizer.classification.document_classifier import DocumentClassifier, detect_language
from anonymizer.classification.rule_engine import RuleEngine
from anonymizer.core.cancellation import CancellationToken
from anonymizer.core.settings import Settings, get_settings
from anonymizer.ml.chunker import estimate_token_count
from anonymizer.ml.metrics import (
    COUNTER_CLASSIFICATION_FAILED,
    COUNTER_MODEL_FATAL,
    COUNTER_RULE_ENGINE_FAILED,
    COUNTER_RUN_CANCELLED,
    LANGUAGE_CODES,
    PLATFORM_TAGS,
    InferenceMetric,
    MetricsCollector,
    get_metrics_collector,
)
from anonymizer.ml.ner_model import NerModel, build_ner_model
from anonymizer.ml.retry import RetryConfig
from anonymizer.ml.worker import InferenceWorker
from anonymizer.pii.candidates import CandidateGenerator, CandidateResult, FatalInferenceError
from anonymizer.pii.context_scorer import ContextScorer
from anonymizer.pii.deny_list import DenyList
from anonymizer.pii.entities import (
    DocumentClassification,
    DocumentType,
    Entity,
    GroupedAddress,
)
from anonymizer.pii.format_validation import FormatValidationPass
from anonymizer.pii.pattern_detector import PatternDetector
from anonymizer.pipeline.document import DocumentInput

logger = logging.getLogger(__name__)

# Reasons recorded in PipelineResult.partial_reasons.
REASON_MODEL_FATAL = "model_fatal_error"
REASON_CHUNKS_SKIPPED = "chunk_inference_skipped"
REASON_CLASSIFICATION_FAILED = "classification_failed"
REASON_RULE_ENGINE_FAILED = "rule_engine_failed"
REASON_CANCELLED = "cancelled"


class RunStatus(StrEnum):
    COMPLETE = "COMPLETE"
    PARTIAL = "PARTIAL"


def parse_rule_sets(value: str) -> tuple[DocumentType, ...]:
    """Parse a comma-separated list of document types.

    Raises
    ------
    ValueError
        If a name is not a known document type.
    """
    names = [part.strip().lower() for part in value.split(",") if part.strip()]
    try:
        return tuple(DocumentType(name) for name in names)
    except ValueError as exc:
        raise ValueError(f"unknown document type in enabled rule sets: {value!r}") from exc


@dataclass
class PipelineConfig:
    """Per-run configuration; build one with ``from_settings``."""

    ml_threshold: float = 0.3
    chunk_max_tokens: int = 512
    chunk_overlap_tokens: int = 50
    retry: RetryConfig = field(default_factory=RetryConfig)
    inference_timeout_s: float | None = 30.0
    review_threshold: float = 0.6
    auto_anonymize_threshold: float = 0.8
    enabled_rule_sets: tuple[DocumentType, ...] | None = None
    language_hint: str | None = None
    context_window: int = 50
    header_ratio: float = 0.2
    footer_ratio: float = 0.3
    platform: str = "server"

    def __post_init__(self) -> None:
        if self.platform not in PLATFORM_TAGS:
            raise ValueError(f"unknown platform tag: {self.platform!r}")
        if not 0.0 <= self.ml_threshold <= 1.0:
            raise ValueError(f"ml_threshold must be in [0, 1]; got {self.ml_threshold}")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> PipelineConfig:
        settings = settings if settings is not None else get_settings()
        return cls(
            ml_threshold=settings.ml_confidence_threshold,
            chunk_max_tokens=settings.chunk_max_tokens,
            chunk_overlap_tokens=settings.chunk_overlap_tokens,
            retry=RetryConfig(
                max_retries=settings.retry_max_attempts,
                initial_delay_ms=settings.retry_initial_delay_ms,
                backoff_multiplier=settings.retry_backoff_multiplier,
                max_delay_ms=settings.retry_max_delay_ms,
            ),
            inference_timeout_s=settings.inference_timeout_s,
            review_threshold=settings.review_threshold,
            auto_anonymize_threshold=settings.auto_anonymize_threshold,
            enabled_rule_sets=parse_rule_sets(settings.enabled_rule_sets),
            context_window=settings.context_window_chars,
            header_ratio=settings.header_ratio,
            footer_ratio=settings.footer_ratio,
            platform=settings.inference_platform,
        )


@dataclass
class PipelineResult:
    """Everything one run produced.

    ``entities`` holds the standalone entities and the grouped addresses
    together, ordered by position; ``addresses`` repeats the latter for
    convenience.
    """

    entities: list[Entity]
    addresses: list[GroupedAddress]
    classification: DocumentClassification
    status: RunStatus
    partial_reasons: list[str] = field(default_factory=list)
    duration_ms: float = 0.0
    chunk_count: int = 0
    skipped_chunks: list[int] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return self.status == RunStatus.PARTIAL


@dataclass
class _Run:
    """Mutable state of one run; never shared."""

    document: DocumentInput
    started: float
    entities: list[Entity] = field(default_factory=list)
    addresses: list[GroupedAddress] = field(default_factory=list)
    classification: DocumentClassification | None = None
    reasons: list[str] = field(default_factory=list)
    candidates: CandidateResult = field(default_factory=CandidateResult)
    model_failed: bool = False


class Orchestrator:
    """Sequence the detection passes for one document at a time.

    Pass collaborators are stateless and may be shared between runs; the
    orchestrator creates defaults for any that are not supplied.  When a
    ``model`` is given without a ``worker``, the orchestrator creates and
    owns a background ``InferenceWorker`` for it (released by ``close``).

    Usage::

        orchestrator = Orchestrator.from_settings()
        try:
            result = orchestrator.run_sync(text)
        finally:
            orchestrator.close()
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        *,
        model: NerModel | None = None,
        worker: InferenceWorker | None = None,
        pattern_detector: PatternDetector | None = None,
        deny_list: DenyList | None = None,
        classifier: DocumentClassifier | None = None,
        rule_engine: RuleEngine | None = None,
        linker: AddressLinker | None = None,
        scorer: AddressScorer | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.config = config if config is not None else PipelineConfig()
        self.metrics = metrics if metrics is not None else get_metrics_collector()

        self._owns_worker = worker is None and model is not None
        self._worker = worker if worker is not None else (InferenceWorker(model) if model is not None else None)

        cfg = self.config
        self._candidates = CandidateGenerator(
            pattern_detector,
            self._worker,
            ml_threshold=cfg.ml_threshold,
            chunk_max_tokens=cfg.chunk_max_tokens,
            chunk_overlap_tokens=cfg.chunk_overlap_tokens,
            retry_config=cfg.retry,
            inference_timeout_s=cfg.inference_timeout_s,
            deny_list=deny_list,
            metrics=self.metrics,
        )
        self._validation = FormatValidationPass()
        self._context = ContextScorer(
            cfg.context_window,
            header_ratio=cfg.header_ratio,
            footer_ratio=cfg.footer_ratio,
        )
        self._classifier = classifier if classifier is not None else DocumentClassifier()
        if rule_engine is None:
            rule_engine = RuleEngine(
                enabled=cfg.enabled_rule_sets,
                header_ratio=cfg.header_ratio,
                footer_ratio=cfg.footer_ratio,
            )
        self._rules = rule_engine
        self._linker = linker if linker is not None else AddressLinker()
        if scorer is None:
            scorer = AddressScorer(cfg.review_threshold, cfg.auto_anonymize_threshold)
        self._scorer = scorer

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **kwargs) -> Orchestrator:
        """Build an orchestrator with the NER backend selected in *settings*."""
        settings = settings if settings is not None else get_settings()
        if "model" not in kwargs and "worker" not in kwargs:
            kwargs["model"] = build_ner_model(settings)
        return cls(PipelineConfig.from_settings(settings), **kwargs)

    def close(self) -> None:
        if self._owns_worker and self._worker is not None:
            self._worker.close()

    def __enter__(self) -> Orchestrator:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run_sync(
        self,
        document: str | DocumentInput,
        *,
        cancel: CancellationToken | None = None,
    ) -> PipelineResult:
        """Blocking wrapper around ``run`` for callers without an event loop."""
        return asyncio.run(self.run(document, cancel=cancel))

    async def run(
        self,
        document: str | DocumentInput,
        *,
        cancel: CancellationToken | None = None,
    ) -> PipelineResult:
        """Run every pass over *document* and return the final entity set."""
        run = _Run(document=DocumentInput.coerce(document), started=time.perf_counter())
        text = run.document.text
        language_hint = run.document.language_hint or self.config.language_hint

        await self._generate(run, language_hint, cancel)
        if self._cancelled(run, cancel):
            return self._finish(run)

        self._validation.apply(run.entities, text)
        if self._cancelled(run, cancel):
            return self._finish(run)

        self._context.apply(run.entities, text)
        if self._cancelled(run, cancel):
            return self._finish(run)

        run.classification = self._classify(run, language_hint)
        if self._cancelled(run, cancel):
            return self._finish(run)

        run.entities = self._apply_rules(run)
        if self._cancelled(run, cancel):
            return self._finish(run)

        link = self._linker.link(run.entities, text)
        run.addresses = self._scorer.score_all(link.addresses)
        run.entities = link.standalone
        return self._finish(run)

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def _generate(
        self,
        run: _Run,
        language_hint: str | None,
        cancel: CancellationToken | None,
    ) -> None:
        try:
            run.candidates = await self._candidates.generate(
                run.document.text, language=language_hint, cancel=cancel,
            )
        except FatalInferenceError as exc:
            run.candidates = exc.partial
            run.model_failed = True
            run.reasons.append(REASON_MODEL_FATAL)
            self.metrics.increment(COUNTER_MODEL_FATAL)
            logger.error(
                "pipeline: model disabled for this run error_type=%s; keeping %d pattern candidates",
                type(exc.__cause__).__name__ if exc.__cause__ else type(exc).__name__,
                len(exc.partial.entities),
            )
        run.entities = run.candidates.entities
        if run.candidates.skipped_chunks:
            run.reasons.append(REASON_CHUNKS_SKIPPED)

    def _classify(self, run: _Run, language_hint: str | None) -> DocumentClassification:
        try:
            return self._classifier.classify(run.document.text, language_hint)
        except Exception as exc:
            run.reasons.append(REASON_CLASSIFICATION_FAILED)
            self.metrics.increment(COUNTER_CLASSIFICATION_FAILED)
            logger.warning("pipeline: classification failed error_type=%s; using unknown", type(exc).__name__)
            return self._fallback_classification(run.document.text, language_hint)

    def _apply_rules(self, run: _Run) -> list[Entity]:
        classification = run.classification
        text = run.document.text
        try:
            return self._rules.apply_type_rules(
                text, classification.type, run.entities, classification.language,
            )
        except Exception as exc:
            run.reasons.append(REASON_RULE_ENGINE_FAILED)
            self.metrics.increment(COUNTER_RULE_ENGINE_FAILED)
            logger.warning(
                "pipeline: rules for type=%s failed error_type=%s",
                classification.type,
                type(exc).__name__,
            )
        if classification.type == DocumentType.UNKNOWN:
            return run.entities
        try:
            return self._rules.apply_type_rules(
                text, DocumentType.UNKNOWN, run.entities, classification.language,
            )
        except Exception as exc:
            logger.warning("pipeline: baseline rules failed error_type=%s", type(exc).__name__)
            return run.entities

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    @staticmethod
    def _fallback_classification(text: str, language_hint: str | None) -> DocumentClassification:
        language = language_hint if language_hint in LANGUAGE_CODES else detect_language(text)
        return DocumentClassification(type=DocumentType.UNKNOWN, confidence=0.0, language=language)

    def _cancelled(self, run: _Run, cancel: CancellationToken | None) -> bool:
        if cancel is None or not cancel.cancelled:
            return False
        if REASON_CANCELLED not in run.reasons:
            run.reasons.append(REASON_CANCELLED)
            self.metrics.increment(COUNTER_RUN_CANCELLED)
            logger.info("pipeline: run cancelled; returning %d entities", len(run.entities))
        return True

    def _finish(self, run: _Run) -> PipelineResult:
        text = run.document.text
        classification = run.classification or self._fallback_classification(
            text, run.document.language_hint or self.config.language_hint,
        )
        entities: list[Entity] = [*run.entities, *run.addresses]
        entities.sort(key=lambda e: (e.start, e.end))
        duration_ms = (time.perf_counter() - run.started) * 1000.0

        status = RunStatus.PARTIAL if run.reasons else RunStatus.COMPLETE
        self._record_metric(run, classification, len(entities), duration_ms)

        # SAFETY: log only metadata
        logger.info(
            "pipeline: status=%s type=%s language=%s entities=%d addresses=%d duration_ms=%.1f",
            status,
            classification.type,
            classification.language,
            len(entities),
            len(run.addresses),
            duration_ms,
        )
        return PipelineResult(
            entities=entities,
            addresses=list(run.addresses),
            classification=classification,
            status=status,
            partial_reasons=list(run.reasons),
            duration_ms=duration_ms,
            chunk_count=run.candidates.chunk_count,
            skipped_chunks=sorted(run.candidates.skipped_chunks),
        )

    def _record_metric(
        self,
        run: _Run,
        classification: DocumentClassification,
        entity_count: int,
        duration_ms: float,
    ) -> None:
        text = run.document.text
        chunk_count = max(1, run.candidates.chunk_count)
        self.metrics.record(InferenceMetric(
            duration_ms=duration_ms,
            text_length=len(text),
            token_estimate=estimate_token_count(text),
            entity_count=entity_count,
            document_type=classification.type,
            language=classification.language if classification.language in LANGUAGE_CODES else "unknown",
            platform=self.config.platform,
            chunk_count=chunk_count,
            chunked=chunk_count > 1,
            failed=run.model_failed,
            retry_attempts=run.candidates.retry_attempts,
        ))

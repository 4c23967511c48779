"""Tests for anonymizer/pii/pattern_detector.py, candidates.py and deny_list.py.

Covers:
  - PatternDetector finds AVS, IBAN, email, phone, UID, postal/city, street
    and date candidates with PATTERN source and pattern metadata
  - resolve_same_source keeps the longer of two overlapping spans
  - merge_detector_outputs: BOTH source, union span, pattern type wins,
    max confidence; non-overlapping model spans stay MODEL
  - CandidateGenerator with a fake worker: threshold, unmapped labels,
    skipped chunks after exhausted retries, rejected input, fatal error
    carrying pattern-only partial results, cancellation
  - DenyList: global / per-type / per-language entries, month names,
    malformed documents
  - No raw entity text in candidate logs
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest

from anonymizer.core.cancellation import CancellationToken
from anonymizer.ml.metrics import COUNTER_CHUNK_SKIPPED, COUNTER_MODEL_INPUT_REJECTED, MetricsCollector
from anonymizer.ml.retry import RetryConfig
from anonymizer.pii.candidates import (
    CandidateGenerator,
    FatalInferenceError,
    map_model_label,
    merge_detector_outputs,
    resolve_same_source,
)
from anonymizer.pii.deny_list import DenyList
from anonymizer.pii.entities import DetectionSource, Entity, EntityType
from anonymizer.pii.pattern_detector import PatternDetector

VALID_AVS = "756.1234.5678.97"
VALID_IBAN = "CH93 0076 2011 6238 5295 7"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class _FakeWorker:
    """Async stand-in for InferenceWorker driven by a per-call script."""

    def __init__(self, responder) -> None:
        self._responder = responder
        self.calls: list[str] = []

    async def infer(self, text: str, *, timeout: float | None = None) -> list[dict[str, Any]]:
        self.calls.append(text)
        return self._responder(text)


def _raising(error: Exception):
    def _respond(text: str) -> list[dict[str, Any]]:
        raise error
    return _respond


def _entity(
    entity_type: EntityType,
    start: int,
    end: int,
    text: str,
    confidence: float = 0.7,
    source: DetectionSource = DetectionSource.PATTERN,
) -> Entity:
    return Entity(
        type=entity_type,
        start=start,
        end=end,
        text=text[start:end],
        confidence=confidence,
        source=source,
    )


def _generator(worker=None, **kwargs) -> CandidateGenerator:
    kwargs.setdefault("retry_config", RetryConfig(max_retries=2, initial_delay_ms=0))
    return CandidateGenerator(PatternDetector(), worker, **kwargs)


# ---------------------------------------------------------------------------
# PatternDetector
# ---------------------------------------------------------------------------

class TestPatternDetector:
    @pytest.mark.parametrize("text,entity_type,expected", [
        (f"AHV-Nr. {VALID_AVS}", EntityType.SWISS_AVS, VALID_AVS),
        (f"IBAN: {VALID_IBAN}", EntityType.IBAN, VALID_IBAN),
        ("Mail: hans.muster@example.ch", EntityType.EMAIL, "hans.muster@example.ch"),
        ("Tel. +41 79 123 45 67", EntityType.PHONE, "+41 79 123 45 67"),
        ("Tel. 044 668 18 00", EntityType.PHONE, "044 668 18 00"),
        ("UID CHE-116.281.710", EntityType.VAT_NUMBER, "CHE-116.281.710"),
        ("Wohnhaft in 8001 Zürich.", EntityType.SWISS_ADDRESS, "8001 Zürich"),
        ("Bahnhofstrasse 12", EntityType.ADDRESS, "Bahnhofstrasse 12"),
        ("Rue de Lausanne 12", EntityType.ADDRESS, "Rue de Lausanne 12"),
        ("Datum: 12.03.2024", EntityType.DATE, "12.03.2024"),
        ("le 1er janvier 2023", EntityType.DATE, "1er janvier 2023"),
        ("Muster Treuhand AG", EntityType.ORGANIZATION, "Muster Treuhand AG"),
    ])
    def test_finds_pattern(self, text: str, entity_type: EntityType, expected: str) -> None:
        entities = PatternDetector().detect(text)
        matches = [e for e in entities if e.type == entity_type]
        assert any(e.text == expected for e in matches), [(e.type, e.text) for e in entities]
        for entity in matches:
            assert entity.source == DetectionSource.PATTERN
            assert text[entity.start:entity.end] == entity.text
            assert "pattern" in entity.metadata

    def test_empty_text(self) -> None:
        assert PatternDetector().detect("") == []

    def test_locale_filter(self) -> None:
        detector = PatternDetector(locales=["CH"])
        locales = {d.locale for d in detector.definitions}
        assert locales <= {"GLOBAL", "CH"}

    def test_ordered_by_position(self) -> None:
        text = f"{VALID_AVS} und hans@example.ch"
        starts = [e.start for e in PatternDetector().detect(text)]
        assert starts == sorted(starts)


# ---------------------------------------------------------------------------
# Overlap resolution
# ---------------------------------------------------------------------------

class TestOverlapResolution:
    def test_same_source_longer_wins(self) -> None:
        text = "Bahnhofstrasse 12, 8001 Zürich"
        short = _entity(EntityType.SWISS_ADDRESS, 19, 30, text)
        long = _entity(EntityType.ADDRESS, 0, 30, text)
        assert resolve_same_source([short, long]) == [long]

    def test_same_source_keeps_disjoint(self) -> None:
        text = "aaaa bbbb"
        a = _entity(EntityType.PERSON, 0, 4, text)
        b = _entity(EntityType.PERSON, 5, 9, text)
        assert resolve_same_source([b, a]) == [a, b]

    def test_model_span_merged_into_pattern(self) -> None:
        text = f"AHV {VALID_AVS} bitte"
        pattern = _entity(EntityType.SWISS_AVS, 4, 4 + len(VALID_AVS), text, 0.7)
        model = _entity(EntityType.PERSON, 0, 10, text, 0.9, DetectionSource.MODEL)
        model.metadata["model_label"] = "PER"

        merged = merge_detector_outputs([pattern], [model], text)
        assert len(merged) == 1
        result = merged[0]
        assert result.type == EntityType.SWISS_AVS
        assert result.source == DetectionSource.BOTH
        assert (result.start, result.end) == (0, 4 + len(VALID_AVS))
        assert result.text == text[0:4 + len(VALID_AVS)]
        assert result.confidence == pytest.approx(0.9)

    def test_model_span_merged_into_largest_overlap(self) -> None:
        text = "0123456789012345678901234567890"
        left = _entity(EntityType.DATE, 0, 10, text)
        right = _entity(EntityType.PHONE, 12, 30, text)
        model = _entity(EntityType.PERSON, 8, 25, text, 0.8, DetectionSource.MODEL)

        merged = merge_detector_outputs([left, right], [model], text)
        assert [e.type for e in merged] == [EntityType.DATE, EntityType.PHONE]
        assert merged[1].source == DetectionSource.BOTH
        assert merged[0].source == DetectionSource.PATTERN

    def test_disjoint_model_span_kept(self) -> None:
        text = "Hans Muster 756.1234.5678.97"
        pattern = _entity(EntityType.SWISS_AVS, 12, 28, text)
        model = _entity(EntityType.PERSON, 0, 11, text, 0.9, DetectionSource.MODEL)
        merged = merge_detector_outputs([pattern], [model], text)
        assert [(e.type, e.source) for e in merged] == [
            (EntityType.PERSON, DetectionSource.MODEL),
            (EntityType.SWISS_AVS, DetectionSource.PATTERN),
        ]

    def test_label_map(self) -> None:
        assert map_model_label("per") == EntityType.PERSON
        assert map_model_label("GPE") == EntityType.LOCATION
        assert map_model_label("MISC") is None


# ---------------------------------------------------------------------------
# CandidateGenerator
# ---------------------------------------------------------------------------

class TestCandidateGenerator:
    TEXT = f"Herr Hans Muster wohnt in Bern. AHV {VALID_AVS}."

    def test_patterns_only_without_worker(self) -> None:
        result = asyncio.run(_generator().generate(self.TEXT))
        assert result.model_used is False
        assert result.chunk_count == 0
        assert [e.type for e in result.entities] == [EntityType.SWISS_AVS]

    def test_model_entities_added(self) -> None:
        start = self.TEXT.index("Hans")
        worker = _FakeWorker(lambda text: [
            {"entity_group": "PER", "start": start, "end": start + 11, "score": 0.95},
            {"entity_group": "MISC", "start": 0, "end": 4, "score": 0.99},
            {"entity_group": "LOC", "start": 26, "end": 30, "score": 0.1},
        ])
        result = asyncio.run(_generator(worker).generate(self.TEXT))

        assert result.model_used is True
        assert result.chunk_count == 1
        by_type = {e.type: e for e in result.entities}
        assert set(by_type) == {EntityType.PERSON, EntityType.SWISS_AVS}
        assert by_type[EntityType.PERSON].text == "Hans Muster"
        assert by_type[EntityType.PERSON].source == DetectionSource.MODEL
        assert by_type[EntityType.PERSON].confidence == pytest.approx(0.95)

    def test_entities_ordered_by_position(self) -> None:
        worker = _FakeWorker(lambda text: [{"entity_group": "PER", "start": 5, "end": 16, "score": 0.9}])
        result = asyncio.run(_generator(worker).generate(self.TEXT))
        starts = [e.start for e in result.entities]
        assert starts == sorted(starts)

    def test_exhausted_retries_skip_chunk(self) -> None:
        metrics = MetricsCollector()
        worker = _FakeWorker(_raising(TimeoutError("timed out")))
        result = asyncio.run(_generator(worker, metrics=metrics).generate(self.TEXT))

        assert result.skipped_chunks == [0]
        assert len(worker.calls) == 2
        assert result.retry_attempts == 1
        assert [e.type for e in result.entities] == [EntityType.SWISS_AVS]
        assert metrics.counter(COUNTER_CHUNK_SKIPPED) == 1

    def test_rejected_input_skips_model_call(self) -> None:
        metrics = MetricsCollector()
        worker = _FakeWorker(lambda text: [])
        result = asyncio.run(_generator(worker, metrics=metrics).generate("   \n  "))

        assert result.rejected_chunks == [0]
        assert worker.calls == []
        assert metrics.counter(COUNTER_MODEL_INPUT_REJECTED) == 1

    def test_fatal_error_stops_model_and_keeps_patterns(self) -> None:
        text = " ".join([f"Satz {i} über das Wetter in Bern." for i in range(60)]) + f" AHV {VALID_AVS}."
        worker = _FakeWorker(_raising(RuntimeError("model corrupted")))
        generator = _generator(worker, chunk_max_tokens=40, chunk_overlap_tokens=0)

        with pytest.raises(FatalInferenceError) as exc_info:
            asyncio.run(generator.generate(text))

        partial = exc_info.value.partial
        assert partial.chunk_count > 1
        assert len(worker.calls) == 1
        assert [e.type for e in partial.entities] == [EntityType.SWISS_AVS]
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_cancelled_before_start_makes_no_model_calls(self) -> None:
        token = CancellationToken()
        token.cancel()
        worker = _FakeWorker(lambda text: [])
        result = asyncio.run(_generator(worker).generate(self.TEXT, cancel=token))

        assert worker.calls == []
        assert result.cancelled is True
        assert [e.type for e in result.entities] == [EntityType.SWISS_AVS]

    def test_deny_list_applied(self) -> None:
        text = "Rechnung Total Betrag"
        worker = _FakeWorker(lambda t: [{"entity_group": "PER", "start": 9, "end": 14, "score": 0.9}])
        result = asyncio.run(_generator(worker).generate(text))
        assert result.entities == []

    def test_entity_text_never_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        start = self.TEXT.index("Hans")
        worker = _FakeWorker(lambda text: [{"entity_group": "PER", "start": start, "end": start + 11, "score": 0.9}])
        with caplog.at_level(logging.DEBUG, logger="anonymizer"):
            asyncio.run(_generator(worker).generate(self.TEXT))
        assert "Hans Muster" not in caplog.text
        assert VALID_AVS not in caplog.text


# ---------------------------------------------------------------------------
# DenyList
# ---------------------------------------------------------------------------

class TestDenyList:
    def _deny_list(self) -> DenyList:
        return DenyList({
            "version": "1",
            "global": ["Total", {"regex": "^Seite \\d+$"}],
            "by_entity_type": {"PERSON": ["Herr"], "ORGANIZATION": [{"regex": "^ag$", "ignore_case": True}]},
            "by_language": {"fr": ["Madame"]},
        })

    def test_global_entries_case_insensitive(self) -> None:
        assert self._deny_list().is_denied("TOTAL", EntityType.PERSON) is True
        assert self._deny_list().is_denied("Seite 3", EntityType.DATE) is True

    def test_per_type_entries(self) -> None:
        deny = self._deny_list()
        assert deny.is_denied("Herr", EntityType.PERSON) is True
        assert deny.is_denied("Herr", EntityType.LOCATION) is False
        assert deny.is_denied("AG", EntityType.ORGANIZATION) is True

    def test_per_language_entries(self) -> None:
        deny = self._deny_list()
        assert deny.is_denied("Madame", EntityType.PERSON, "fr") is True
        assert deny.is_denied("Madame", EntityType.PERSON, "de") is False

    def test_month_names_denied_as_person(self) -> None:
        deny = self._deny_list()
        assert deny.is_denied("Juli", EntityType.PERSON) is True
        assert deny.is_denied("Juli", EntityType.LOCATION) is False

    def test_blank_text_denied(self) -> None:
        assert self._deny_list().is_denied("  ", EntityType.PERSON) is True

    def test_missing_fields_rejected(self) -> None:
        with pytest.raises(ValueError, match="missing required fields"):
            DenyList({"version": "1", "global": []})

    def test_unsupported_entry_rejected(self) -> None:
        with pytest.raises(ValueError, match="unsupported deny-list entry"):
            DenyList({"version": "1", "global": [42], "by_entity_type": {}, "by_language": {}})

    def test_packaged_list_loads(self) -> None:
        deny = DenyList.load()
        assert deny.is_denied("Montant", EntityType.PERSON) is True
        assert deny.is_denied("Hans Muster", EntityType.PERSON) is False

    def test_load_rejects_non_mapping(self, tmp_path) -> None:
        path = tmp_path / "deny.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ValueError, match="expected a YAML mapping"):
            DenyList.load(path)

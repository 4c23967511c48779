"""Tests for anonymizer/classification/.

Covers:
  - detect_language: stop-word vote for de/fr/it/en, unknown fallback
  - DocumentClassifier: invoice and letter documents, unknown below the
    confidence floor, language hint, features carry no document text,
    applicable rule names per type
  - LetterRules: salutation, recipient block, signature, letter date
    (header vs body, first date wins), reference line, generic salutations
  - rule_loader: packaged rule sets, malformed files raise RuleSetError
  - RuleEngine: type dispatch with baseline fallback, position boost,
    noisy-OR merge with existing entities, letter-structure types absorb
    overlapping DATE/PERSON/address entities, no text in logs
"""
from __future__ import annotations

import logging
from pathlib import Path

import pytest

from anonymizer.classification.document_classifier import DocumentClassifier, detect_language
from anonymizer.classification.letter_rules import RULE_NAMES, LetterRules
from anonymizer.classification.rule_engine import RuleEngine, absorb, noisy_or
from anonymizer.classification.rule_loader import (
    RuleSetError,
    get_default_rule_sets,
    load_rule_set,
    load_rule_sets,
)
from anonymizer.pii.entities import DetectionSource, DocumentType, Entity, EntityType, ValidationStatus

INVOICE_TEXT = (
    "Rechnung Nr. 2024-0042\n"
    "Muster Treuhand AG\n"
    "Bahnhofstrasse 12, 8001 Zürich\n"
    "\n"
    "Menge Einzelpreis Betrag\n"
    "2 CHF 150.00 CHF 300.00\n"
    "MWST 8.1% CHF 24.30\n"
    "Gesamtbetrag: CHF 324.30\n"
    "Zahlbar innert 30 Tagen."
)

LETTER_TEXT = (
    "Muster Treuhand AG\n"
    "Bahnhofstrasse 12\n"
    "8001 Zürich\n"
    "\n"
    "Zürich, 12. März 2024\n"
    "\n"
    "Betreff: Ihre Anfrage vom Februar\n"
    "\n"
    "Sehr geehrter Herr Müller\n"
    "\n"
    "Vielen Dank für Ihre Anfrage. Anbei finden Sie die gewünschten Unterlagen.\n"
    "\n"
    "Mit freundlichen Grüssen\n"
    "\n"
    "Anna Meier"
)

FILLER = "Die Leistungen wurden wie vereinbart erbracht.\n" * 6


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _entity(text: str, needle: str, entity_type: EntityType, confidence: float) -> Entity:
    start = text.index(needle)
    return Entity(
        type=entity_type,
        start=start,
        end=start + len(needle),
        text=needle,
        confidence=confidence,
        source=DetectionSource.MODEL,
    )


def _write(tmp_path: Path, name: str, content: str) -> Path:
    path = tmp_path / name
    path.write_text(content, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

class TestDetectLanguage:
    @pytest.mark.parametrize("text,expected", [
        ("Der Kunde und die Firma sind bei uns.", "de"),
        ("Le client et la société sont dans le dossier.", "fr"),
        ("Il cliente e la società sono con noi.", "it"),
        ("The client and the company were with us.", "en"),
        ("12345 67890", "unknown"),
    ])
    def test_detects(self, text: str, expected: str) -> None:
        assert detect_language(text) == expected


class TestDocumentClassifier:
    def test_invoice(self) -> None:
        result = DocumentClassifier().classify(INVOICE_TEXT, language_hint="de")
        assert result.type == DocumentType.INVOICE
        assert result.confidence >= 0.4
        assert result.language == "de"

    def test_letter(self) -> None:
        result = DocumentClassifier().classify(LETTER_TEXT)
        assert result.type == DocumentType.LETTER
        assert result.language == "de"
        assert "position:signature_end" in result.features

    def test_unknown_below_floor(self) -> None:
        result = DocumentClassifier().classify("Hallo Welt")
        assert result.type == DocumentType.UNKNOWN
        assert result.confidence < 0.25

    def test_higher_floor_turns_match_into_unknown(self) -> None:
        result = DocumentClassifier(min_confidence=0.99).classify(LETTER_TEXT)
        assert result.type == DocumentType.UNKNOWN

    def test_features_carry_no_document_text(self) -> None:
        result = DocumentClassifier().classify(INVOICE_TEXT)
        assert 0 < len(result.features) <= 10
        for feature in result.features:
            assert feature.split(":")[0] in ("keyword", "pattern", "position")
            assert "2024-0042" not in feature
            assert "Treuhand" not in feature

    def test_is_type(self) -> None:
        classifier = DocumentClassifier()
        assert classifier.is_type(INVOICE_TEXT, DocumentType.INVOICE, min_confidence=0.4) is True
        assert classifier.is_type(INVOICE_TEXT, DocumentType.LETTER) is False

    def test_deterministic(self) -> None:
        classifier = DocumentClassifier()
        assert classifier.classify(LETTER_TEXT) == classifier.classify(LETTER_TEXT)

    def test_applicable_rules(self) -> None:
        classifier = DocumentClassifier()
        assert classifier.get_applicable_rules(DocumentType.LETTER) == list(RULE_NAMES)
        assert classifier.get_applicable_rules(DocumentType.INVOICE) == [
            "invoice_number", "vendor_name", "customer_name", "payment_reference",
        ]
        assert classifier.get_applicable_rules(DocumentType.UNKNOWN) == [
            "labelled_name", "labelled_case_number", "labelled_birth_date",
        ]


# ---------------------------------------------------------------------------
# Letter rules
# ---------------------------------------------------------------------------

class TestLetterRules:
    def test_extracts_letter_parts(self) -> None:
        entities = LetterRules().extract(LETTER_TEXT, "de")
        by_type = {e.type: e for e in entities}

        assert by_type[EntityType.SALUTATION_NAME].text == "Müller"
        assert by_type[EntityType.SIGNATURE].text == "Anna Meier"
        assert by_type[EntityType.LETTER_DATE].text == "12. März 2024"
        assert by_type[EntityType.REFERENCE_LINE].text == "Ihre Anfrage vom Februar"
        assert all(e.source == DetectionSource.RULE for e in entities)
        assert [e.start for e in entities] == sorted(e.start for e in entities)

    def test_spans_match_text(self) -> None:
        for entity in LetterRules().extract(LETTER_TEXT, "de"):
            assert LETTER_TEXT[entity.start:entity.end] == entity.text

    def test_french_salutation(self) -> None:
        entities = LetterRules().extract_salutation_names("Chère Madame Dupont,\n", "fr")
        assert [e.text for e in entities] == ["Dupont"]
        assert entities[0].confidence == pytest.approx(0.85)

    def test_generic_salutation_ignored(self) -> None:
        assert LetterRules().extract_salutation_names("Dear Customer,\n", "en") == []

    def test_recipient_block(self) -> None:
        text = "An:\nHerr Hans Muster\nBahnhofstrasse 12\n8001 Zürich\n\nSehr geehrter Herr Muster"
        entities = LetterRules().extract_recipient_block(text)
        assert len(entities) == 1
        assert entities[0].type == EntityType.RECIPIENT
        assert entities[0].text == "Herr Hans Muster\nBahnhofstrasse 12\n8001 Zürich"

    def test_letter_date_in_header(self) -> None:
        entities = LetterRules().extract_letter_date("12.03.2024\n" + "x" * 100)
        assert entities[0].confidence == pytest.approx(0.85)
        assert entities[0].metadata["in_header"] is True

    def test_letter_date_in_body(self) -> None:
        entities = LetterRules().extract_letter_date("x" * 100 + " 12.03.2024")
        assert entities[0].confidence == pytest.approx(0.70)
        assert entities[0].metadata["in_header"] is False

    def test_first_date_wins(self) -> None:
        text = "Datum 01.02.2024 und 03.04.2024"
        entities = LetterRules().extract_letter_date(text)
        assert len(entities) == 1
        assert entities[0].text == "01.02.2024"

    def test_no_date(self) -> None:
        assert LetterRules().extract_letter_date("Keine Angaben.") == []


# ---------------------------------------------------------------------------
# Rule loader
# ---------------------------------------------------------------------------

class TestRuleLoader:
    def test_packaged_rule_sets(self) -> None:
        rule_sets = get_default_rule_sets()
        assert set(rule_sets) == {
            "baseline", "contract", "correspondence", "form", "invoice", "legal", "medical", "report",
        }
        assert rule_sets["invoice"].document_type == DocumentType.INVOICE
        assert rule_sets["baseline"].document_type == DocumentType.UNKNOWN

    def test_packaged_rule_sets_read_only(self) -> None:
        with pytest.raises(TypeError):
            get_default_rule_sets()["extra"] = get_default_rule_sets()["invoice"]  # type: ignore[index]

    def test_load_directory(self, tmp_path: Path) -> None:
        _write(tmp_path, "custom.yaml", (
            "document_type: invoice\n"
            "rules:\n"
            "  - name: order_number\n"
            "    entity_type: INVOICE_NUMBER\n"
            "    confidence: 0.7\n"
            "    group: value\n"
            "    patterns:\n"
            "      - 'Bestellung[ \\t]+(?P<value>\\d+)'\n"
        ))
        _write(tmp_path, "notes.txt", "ignored")

        rule_sets = load_rule_sets(tmp_path)
        assert list(rule_sets) == ["custom"]
        rule = rule_sets["custom"].rules[0]
        assert rule.entity_type == EntityType.INVOICE_NUMBER
        assert rule.group == "value"

    @pytest.mark.parametrize("content,message", [
        ("- a\n- b\n", "expected a YAML mapping"),
        ("document_type: invoice\n", "missing required fields"),
        ("document_type: recipe\nrules: []\n", "unknown document_type"),
        (
            "document_type: invoice\nrules:\n  - name: r\n    entity_type: NOT_A_TYPE\n"
            "    confidence: 0.5\n    patterns: ['x']\n",
            "unknown entity_type",
        ),
        (
            "document_type: invoice\nrules:\n  - name: r\n    entity_type: PERSON\n"
            "    confidence: 1.5\n    patterns: ['x']\n",
            "confidence must be in",
        ),
        (
            "document_type: invoice\nrules:\n  - name: r\n    entity_type: PERSON\n"
            "    confidence: 0.5\n    patterns: ['(']\n",
            "invalid pattern",
        ),
        (
            "document_type: invoice\nrules:\n  - name: r\n    entity_type: PERSON\n"
            "    confidence: 0.5\n    group: value\n    patterns: ['abc']\n",
            "lacks group",
        ),
        (
            "document_type: invoice\nrules:\n  - name: r\n    entity_type: PERSON\n"
            "    confidence: 0.5\n    patterns: []\n",
            "has no patterns",
        ),
    ])
    def test_malformed(self, tmp_path: Path, content: str, message: str) -> None:
        path = _write(tmp_path, "broken.yaml", content)
        with pytest.raises(RuleSetError, match=message) as exc_info:
            load_rule_set(path)
        assert isinstance(exc_info.value, ValueError)
        assert "broken.yaml" in str(exc_info.value)


# ---------------------------------------------------------------------------
# Rule engine
# ---------------------------------------------------------------------------

class TestRuleEngine:
    LABELLED_INVOICE = (
        "Rechnung Nr. 2024-0042\n"
        + FILLER
        + "Kunde: Herr Hans Muster\n"
        + FILLER
        + "Referenz: 21 00000 00003 13947 14300 09017\n"
    )

    def test_invoice_rules(self) -> None:
        entities = RuleEngine().extract(self.LABELLED_INVOICE, DocumentType.INVOICE)
        by_rule = {e.metadata["rule"]: e for e in entities}

        assert by_rule["invoice_number"].text == "2024-0042"
        assert by_rule["customer_name"].text == "Hans Muster"
        assert by_rule["customer_name"].type == EntityType.PERSON
        assert by_rule["payment_reference"].text == "21 00000 00003 13947 14300 09017"
        assert all(e.metadata["rule_set"] == "invoice" for e in entities)

    def test_disabled_type_uses_baseline(self) -> None:
        engine = RuleEngine(enabled=["letter"])
        assert engine.is_enabled(DocumentType.INVOICE) is False
        assert engine.rule_set_for(DocumentType.INVOICE).name == "baseline"

    def test_unknown_type_uses_baseline(self) -> None:
        engine = RuleEngine()
        assert engine.is_enabled(DocumentType.UNKNOWN) is False
        entities = engine.extract("Name: Hans Muster\nAktenzeichen: ZH-2024-17", DocumentType.UNKNOWN)
        assert {(e.type, e.text) for e in entities} == {
            (EntityType.PERSON, "Hans Muster"),
            (EntityType.CASE_NUMBER, "ZH-2024-17"),
        }

    def test_unknown_enabled_name_rejected(self) -> None:
        with pytest.raises(ValueError):
            RuleEngine(enabled=["recipe"])

    def test_letter_dispatch(self) -> None:
        types = {e.type for e in RuleEngine().extract(LETTER_TEXT, DocumentType.LETTER, "de")}
        assert EntityType.SALUTATION_NAME in types
        assert EntityType.SIGNATURE in types

    def test_letter_disabled_runs_baseline(self) -> None:
        engine = RuleEngine(enabled=["invoice"])
        types = {e.type for e in engine.extract(LETTER_TEXT, DocumentType.LETTER, "de")}
        assert EntityType.SALUTATION_NAME not in types

    def test_position_boost(self) -> None:
        text = "x" * 100
        header = Entity(EntityType.PERSON, 5, 10, "xxxxx", 0.5, DetectionSource.RULE)
        middle = Entity(EntityType.PERSON, 40, 45, "xxxxx", 0.5, DetectionSource.RULE)
        footer = Entity(EntityType.PERSON, 90, 95, "xxxxx", 0.95, DetectionSource.RULE)

        RuleEngine().apply_position_boost([header, middle, footer], len(text))

        assert header.confidence == pytest.approx(0.65)
        assert header.metadata["position_boost"] == "header"
        assert middle.confidence == pytest.approx(0.5)
        assert "position_boost" not in middle.metadata
        assert footer.confidence == pytest.approx(1.0)
        assert footer.metadata["position_boost"] == "footer"

    def test_header_wins_over_footer(self) -> None:
        entity = Entity(EntityType.PERSON, 5, 10, "xxxxx", 0.5, DetectionSource.RULE)
        RuleEngine(header_ratio=0.5, footer_ratio=0.99).apply_position_boost([entity], 100)
        assert entity.metadata["position_boost"] == "header"

    def test_noisy_or(self) -> None:
        assert noisy_or(0.5, 0.5) == pytest.approx(0.75)
        assert noisy_or(0.6, 0.7) == pytest.approx(0.88)
        assert noisy_or(0.0, 0.4) == pytest.approx(0.4)

    def test_overlap_with_same_type_is_merged(self) -> None:
        text = self.LABELLED_INVOICE
        existing = _entity(text, "Hans Muster", EntityType.PERSON, 0.6)

        result = RuleEngine(position_boost=0.0).apply_type_rules(text, DocumentType.INVOICE, [existing])

        persons = [e for e in result if e.type == EntityType.PERSON]
        assert persons == [existing]
        assert existing.confidence == pytest.approx(0.88)
        assert existing.metadata["merged_rules"] == ["customer_name"]
        assert existing.source == DetectionSource.MODEL

    def test_overlap_with_other_type_is_added(self) -> None:
        text = self.LABELLED_INVOICE
        existing = _entity(text, "Hans Muster", EntityType.LOCATION, 0.6)

        result = RuleEngine().apply_type_rules(text, DocumentType.INVOICE, [existing])

        assert existing in result
        assert any(e.type == EntityType.PERSON and e.source == DetectionSource.RULE for e in result)
        assert existing.confidence == pytest.approx(0.6)
        assert [e.start for e in result] == sorted(e.start for e in result)

    def test_letter_date_absorbs_detected_date(self) -> None:
        date = _entity(LETTER_TEXT, "12. März 2024", EntityType.DATE, 0.6)
        date.validation = ValidationStatus.VALID
        engine = RuleEngine()
        alone = {e.type: e for e in engine.apply_type_rules(LETTER_TEXT, DocumentType.LETTER, [], "de")}

        result = engine.apply_type_rules(LETTER_TEXT, DocumentType.LETTER, [date], "de")

        assert date not in result
        assert not [e for e in result if e.type == EntityType.DATE]
        letter_date = next(e for e in result if e.type == EntityType.LETTER_DATE)
        assert (letter_date.start, letter_date.end) == (date.start, date.end)
        assert letter_date.confidence == pytest.approx(
            noisy_or(alone[EntityType.LETTER_DATE].confidence, 0.6)
        )
        assert letter_date.validation == ValidationStatus.VALID
        assert letter_date.metadata["absorbed"] == [
            {"type": "DATE", "source": "MODEL", "id": date.id},
        ]

    def test_signature_absorbs_person(self) -> None:
        person = _entity(LETTER_TEXT, "Meier", EntityType.PERSON, 0.5)

        result = RuleEngine().apply_type_rules(LETTER_TEXT, DocumentType.LETTER, [person], "de")

        assert not [e for e in result if e.type == EntityType.PERSON]
        signature = next(e for e in result if e.type == EntityType.SIGNATURE)
        assert signature.text == "Anna Meier"

    def test_recipient_absorbs_address(self) -> None:
        text = "An:\nHerr Hans Muster\nBahnhofstrasse 12\n8001 Zürich\n\nSehr geehrter Herr Muster"
        address = _entity(text, "8001 Zürich", EntityType.SWISS_ADDRESS, 0.7)

        result = RuleEngine().apply_type_rules(text, DocumentType.LETTER, [address], "de")

        recipient = next(e for e in result if e.type == EntityType.RECIPIENT)
        assert recipient.start <= address.start and address.end <= recipient.end
        assert address not in result

    def test_absorb_widens_span(self) -> None:
        text = "Datum: 12. März 2024 in Bern"
        rule_entity = _entity(text, "12. März", EntityType.LETTER_DATE, 0.7)
        detected = _entity(text, "März 2024", EntityType.DATE, 0.5)

        merged = absorb(rule_entity, [detected], text)

        assert merged.text == "12. März 2024"
        assert merged.type == EntityType.LETTER_DATE
        assert merged.confidence == pytest.approx(0.85)
        assert merged.id == rule_entity.id

    def test_manual_entity_not_absorbed(self) -> None:
        start = LETTER_TEXT.index("Anna Meier")
        manual = Entity(EntityType.PERSON, start, start + 10, "Anna Meier", 1.0, DetectionSource.MANUAL)

        result = RuleEngine().apply_type_rules(LETTER_TEXT, DocumentType.LETTER, [manual], "de")

        assert manual in result
        assert any(e.type == EntityType.SIGNATURE for e in result)

    def test_extracted_text_never_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.DEBUG, logger="anonymizer.classification"):
            RuleEngine().apply_type_rules(self.LABELLED_INVOICE, DocumentType.INVOICE, [])
        assert "Hans Muster" not in caplog.text
        assert "2024-0042" not in caplog.text

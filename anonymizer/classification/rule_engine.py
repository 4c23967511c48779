"""Rule engine: document-type-specific extraction plus position boosts.

Dispatch
--------
- ``letter``            -> ``LetterRules``
- other enabled types   -> the YAML rule set named after the type
- ``unknown``, disabled
  or missing types      -> ``baseline.yaml``

Every extracted entity gets ``+position_boost`` (default 0.15, capped at
1.0) when it starts in the header (first ``header_ratio`` of the text) or
the footer (last ``footer_ratio``).  A new entity that overlaps an existing
entity of the same type is merged into it with noisy-OR
``1 - (1 - a)(1 - b)`` instead of being added twice.

Letter-structure types name the role of text a detector already found
(the letter date is a DATE, the signature a PERSON).  A new entity of such
a type absorbs every overlapping existing entity listed for it in
``ABSORBED_TYPES``; its span grows to cover them and confidences combine
by noisy-OR.  Absorbed entities leave the result.  MANUAL entities are
never absorbed.

Safety rule: extracted text is never logged, only rule names.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Iterable, Mapping

from anonymizer.classification.letter_rules import RULE_NAMES as LETTER_RULE_NAMES
from anonymizer.classification.letter_rules import LetterRules
from anonymizer.classification.rule_loader import (
    BASELINE_RULE_SET,
    RuleSet,
    get_default_rule_sets,
)
from anonymizer.pii.entities import DetectionSource, DocumentType, Entity, EntityType, ValidationStatus

logger = logging.getLogger(__name__)

DEFAULT_POSITION_BOOST: float = 0.15

ABSORBED_TYPES: Mapping[EntityType, frozenset[EntityType]] = {
    EntityType.LETTER_DATE: frozenset({EntityType.DATE}),
    EntityType.SALUTATION_NAME: frozenset({EntityType.PERSON}),
    EntityType.SIGNATURE: frozenset({EntityType.PERSON}),
    EntityType.RECIPIENT: frozenset({
        EntityType.PERSON,
        EntityType.ADDRESS,
        EntityType.SWISS_ADDRESS,
        EntityType.EU_ADDRESS,
    }),
}


def rule_set_name(doc_type: DocumentType) -> str:
    return BASELINE_RULE_SET if doc_type == DocumentType.UNKNOWN else str(doc_type)


def applicable_rule_names(doc_type: DocumentType) -> list[str]:
    """Rule names run for *doc_type* with the packaged rule sets."""
    if doc_type == DocumentType.LETTER:
        return list(LETTER_RULE_NAMES)
    rule_sets = get_default_rule_sets()
    rule_set = rule_sets.get(rule_set_name(doc_type)) or rule_sets.get(BASELINE_RULE_SET)
    return rule_set.rule_names if rule_set is not None else []


def noisy_or(a: float, b: float) -> float:
    return 1.0 - (1.0 - a) * (1.0 - b)


def absorb(entity: Entity, covered: list[Entity], text: str) -> Entity:
    """Return *entity* widened over *covered*, with their confidences folded in."""
    start = min([entity.start, *(e.start for e in covered)])
    end = max([entity.end, *(e.end for e in covered)])
    confidence = entity.confidence
    for other in covered:
        confidence = noisy_or(confidence, other.confidence)
    validation = entity.validation
    if any(e.validation == ValidationStatus.VALID for e in covered):
        validation = ValidationStatus.VALID
    metadata = dict(entity.metadata)
    metadata["absorbed"] = [
        {"type": str(e.type), "source": str(e.source), "id": e.id} for e in covered
    ]
    return replace(
        entity,
        start=start,
        end=end,
        text=text[start:end],
        confidence=confidence,
        validation=validation,
        metadata=metadata,
    )


class RuleEngine:
    """Apply the rules of one document type to one text.

    Parameters
    ----------
    rule_sets:
        Rule sets keyed by name; defaults to the packaged YAML files.
    enabled:
        Document types whose specific rules run.  None enables all.
    """

    def __init__(
        self,
        rule_sets: Mapping[str, RuleSet] | None = None,
        *,
        enabled: Iterable[DocumentType | str] | None = None,
        letter_rules: LetterRules | None = None,
        header_ratio: float = 0.2,
        footer_ratio: float = 0.3,
        position_boost: float = DEFAULT_POSITION_BOOST,
    ) -> None:
        self._rule_sets = rule_sets if rule_sets is not None else get_default_rule_sets()
        self._enabled: frozenset[DocumentType] | None = (
            None if enabled is None else frozenset(DocumentType(str(t).strip()) for t in enabled)
        )
        self._letter_rules = letter_rules if letter_rules is not None else LetterRules(header_ratio=header_ratio)
        self.header_ratio = header_ratio
        self.footer_ratio = footer_ratio
        self.position_boost = position_boost

    def is_enabled(self, doc_type: DocumentType) -> bool:
        if doc_type == DocumentType.UNKNOWN:
            return False
        return self._enabled is None or doc_type in self._enabled

    def rule_set_for(self, doc_type: DocumentType) -> RuleSet | None:
        if self.is_enabled(doc_type):
            rule_set = self._rule_sets.get(rule_set_name(doc_type))
            if rule_set is not None:
                return rule_set
        return self._rule_sets.get(BASELINE_RULE_SET)

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def extract(self, text: str, doc_type: DocumentType, language: str | None = None) -> list[Entity]:
        """Run the rules for *doc_type*; no boosts, no merging."""
        if doc_type == DocumentType.LETTER and self.is_enabled(doc_type):
            return self._letter_rules.extract(text, language)

        rule_set = self.rule_set_for(doc_type)
        if rule_set is None:
            logger.warning("rule_engine: no rule set for type=%s and no baseline", doc_type)
            return []

        entities: list[Entity] = []
        seen: set[tuple[str, int, int]] = set()
        for rule in rule_set.rules:
            for pattern in rule.patterns:
                for match in pattern.finditer(text):
                    start, end = match.span(rule.group) if rule.group else match.span()
                    if start < 0 or start >= end:
                        continue
                    key = (rule.entity_type, start, end)
                    if key in seen:
                        continue
                    seen.add(key)
                    entities.append(Entity(
                        type=rule.entity_type,
                        start=start,
                        end=end,
                        text=text[start:end],
                        confidence=rule.confidence,
                        source=DetectionSource.RULE,
                        metadata={"rule": rule.name, "rule_set": rule_set.name},
                    ))
        entities.sort(key=lambda e: (e.start, e.end))
        return entities

    def apply_position_boost(self, entities: list[Entity], text_length: int) -> None:
        if text_length <= 0:
            return
        header_end = text_length * self.header_ratio
        footer_start = text_length * (1 - self.footer_ratio)
        for entity in entities:
            if entity.start < header_end:
                region = "header"
            elif entity.start >= footer_start:
                region = "footer"
            else:
                continue
            entity.set_confidence(min(1.0, entity.confidence + self.position_boost))
            entity.metadata["position_boost"] = region

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def apply_type_rules(
        self,
        text: str,
        doc_type: DocumentType,
        existing: list[Entity],
        language: str | None = None,
    ) -> list[Entity]:
        """Return *existing* plus the type-specific extractions, merged.

        Existing entities are updated in place when a new extraction of the
        same type overlaps them, and dropped when a letter-structure
        extraction absorbs them.  The returned list is ordered by position.
        """
        new_entities = self.extract(text, doc_type, language)
        self.apply_position_boost(new_entities, len(text))

        result = list(existing)
        added = merged = absorbed = 0
        for entity in new_entities:
            target = next(
                (e for e in result if e.type == entity.type and e.overlaps(entity)),
                None,
            )
            if target is None:
                covered = [
                    e for e in result
                    if e.type in ABSORBED_TYPES.get(entity.type, ())
                    and e.source != DetectionSource.MANUAL
                    and e.overlaps(entity)
                ]
                if covered:
                    entity = absorb(entity, covered, text)
                    covered_ids = {e.id for e in covered}
                    result = [e for e in result if e.id not in covered_ids]
                    absorbed += len(covered)
                result.append(entity)
                added += 1
                continue
            target.set_confidence(noisy_or(target.confidence, entity.confidence))
            target.metadata.setdefault("merged_rules", []).append(entity.metadata.get("rule"))
            if "position_boost" in entity.metadata:
                target.metadata.setdefault("position_boost", entity.metadata["position_boost"])
            merged += 1

        result.sort(key=lambda e: (e.start, e.end))
        logger.debug(
            "rule_engine: type=%s extracted=%d added=%d merged=%d absorbed=%d",
            doc_type,
            len(new_entities),
            added,
            merged,
            absorbed,
        )
        return result

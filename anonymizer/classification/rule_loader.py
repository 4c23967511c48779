"""Rule-set YAML loader.

Loads document-type rule sets from ``classification/rule_sets/*.yaml`` and
returns ``RuleSet`` dataclass instances with pre-compiled patterns.

Document shape::

    document_type: invoice
    description: ...
    rules:
      - name: invoice_number
        entity_type: INVOICE_NUMBER
        confidence: 0.8
        group: value          # optional; named group that becomes the span
        patterns:
          - '(?i:rechnung)...(?P<value>...)'

Patterns are compiled with ``re.MULTILINE``; case-insensitive parts use
scoped ``(?i:...)`` groups so capitalised name captures keep their meaning.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

import yaml

from anonymizer.pii.entities import DocumentType, EntityType

RULE_SETS_DIR = Path(__file__).with_name("rule_sets")
BASELINE_RULE_SET = "baseline"

_REQUIRED_FIELDS: frozenset[str] = frozenset({"document_type", "rules"})
_REQUIRED_RULE_FIELDS: frozenset[str] = frozenset({"name", "entity_type", "confidence", "patterns"})


class RuleSetError(ValueError):
    """A rule-set file is malformed."""


@dataclass(frozen=True)
class RuleDefinition:
    """One extraction rule.

    Attributes
    ----------
    name:         Rule identifier; recorded in entity metadata.
    entity_type:  Entity type emitted on a match.
    confidence:   Base confidence before position boosts.
    patterns:     Compiled patterns; every match of every pattern fires.
    group:        Named group used as the entity span (whole match if None).
    """
    name: str
    entity_type: EntityType
    confidence: float
    patterns: tuple[re.Pattern[str], ...]
    group: str | None = None


@dataclass(frozen=True)
class RuleSet:
    name: str
    document_type: DocumentType
    description: str
    rules: tuple[RuleDefinition, ...]

    @property
    def rule_names(self) -> list[str]:
        return [rule.name for rule in self.rules]


def _parse_rule(raw: object, path: Path, index: int) -> RuleDefinition:
    if not isinstance(raw, dict):
        raise RuleSetError(f"{path}: rule #{index} is not a mapping")
    missing = _REQUIRED_RULE_FIELDS - raw.keys()
    if missing:
        raise RuleSetError(f"{path}: rule #{index} missing required fields: {sorted(missing)}")

    try:
        entity_type = EntityType(raw["entity_type"])
    except ValueError as exc:
        raise RuleSetError(f"{path}: rule {raw['name']!r} has unknown entity_type") from exc

    confidence = float(raw["confidence"])
    if not 0.0 <= confidence <= 1.0:
        raise RuleSetError(f"{path}: rule {raw['name']!r} confidence must be in [0, 1]")

    group = raw.get("group")
    patterns = []
    for source in raw["patterns"] or []:
        try:
            compiled = re.compile(source, re.MULTILINE)
        except re.error as exc:
            raise RuleSetError(f"{path}: rule {raw['name']!r} has an invalid pattern: {exc}") from exc
        if group is not None and group not in compiled.groupindex:
            raise RuleSetError(f"{path}: rule {raw['name']!r} pattern lacks group {group!r}")
        patterns.append(compiled)
    if not patterns:
        raise RuleSetError(f"{path}: rule {raw['name']!r} has no patterns")

    return RuleDefinition(
        name=str(raw["name"]),
        entity_type=entity_type,
        confidence=confidence,
        patterns=tuple(patterns),
        group=group,
    )


def load_rule_set(path: str | Path) -> RuleSet:
    """Load a single rule set from a YAML file.

    Raises
    ------
    RuleSetError
        If the document is not a mapping, lacks a required field, names an
        unknown type, or contains a pattern that does not compile.
    """
    path = Path(path)
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)

    if not isinstance(data, dict):
        raise RuleSetError(f"{path}: expected a YAML mapping, got {type(data).__name__}")

    missing = _REQUIRED_FIELDS - data.keys()
    if missing:
        raise RuleSetError(f"{path}: missing required fields: {sorted(missing)}")

    try:
        document_type = DocumentType(data["document_type"])
    except ValueError as exc:
        raise RuleSetError(f"{path}: unknown document_type {data['document_type']!r}") from exc

    rules = tuple(_parse_rule(raw, path, i) for i, raw in enumerate(data["rules"] or []))
    return RuleSet(
        name=path.stem,
        document_type=document_type,
        description=str(data.get("description", "")),
        rules=rules,
    )


def load_rule_sets(directory: str | Path = RULE_SETS_DIR) -> dict[str, RuleSet]:
    """Load all ``*.yaml`` rule sets from *directory*, keyed by file stem.

    Raises
    ------
    RuleSetError
        If any YAML file fails validation.
    """
    directory = Path(directory)
    rule_sets: dict[str, RuleSet] = {}
    for path in sorted(directory.iterdir()):
        if path.suffix not in (".yaml", ".yml"):
            continue
        rule_set = load_rule_set(path)
        rule_sets[rule_set.name] = rule_set
    return rule_sets


@lru_cache(maxsize=1)
def get_default_rule_sets() -> Mapping[str, RuleSet]:
    """The packaged rule sets, loaded once and read-only afterwards."""
    return MappingProxyType(load_rule_sets(RULE_SETS_DIR))

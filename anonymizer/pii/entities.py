"""Canonical entity dataclasses shared by every detection pass.

Every pass in the pipeline consumes and returns ``Entity`` objects, never
raw match tuples.  Offsets are 0-based, half-open ``[start, end)`` over the
code units of the text exactly as supplied by the caller; no pass
renormalises the text.

Field contract
--------------
id                 : uuid4 hex, unique within a run
type               : closed ``EntityType`` enumeration
start / end        : span in the supplied text; ``start < end`` always
text               : the raw covered text; passed downstream, never logged
confidence         : [0, 1]; fixed at 1.0 for MANUAL entities
source             : which detector produced the entity
validation         : outcome of the format-validation pass
metadata           : free-form per-pass annotations (no raw values)
linked             : True once an address component is owned by a group
flagged_for_review : True when a pass decided a human must look at it
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class EntityType(StrEnum):
    PERSON = "PERSON"
    ORGANIZATION = "ORGANIZATION"
    LOCATION = "LOCATION"
    ADDRESS = "ADDRESS"
    SWISS_ADDRESS = "SWISS_ADDRESS"
    EU_ADDRESS = "EU_ADDRESS"
    SWISS_AVS = "SWISS_AVS"
    IBAN = "IBAN"
    PHONE = "PHONE"
    EMAIL = "EMAIL"
    DATE = "DATE"
    VAT_NUMBER = "VAT_NUMBER"
    PAYMENT_REF = "PAYMENT_REF"
    INVOICE_NUMBER = "INVOICE_NUMBER"
    CASE_NUMBER = "CASE_NUMBER"
    PATIENT_ID = "PATIENT_ID"
    # Address components
    STREET_NAME = "STREET_NAME"
    STREET_NUMBER = "STREET_NUMBER"
    POSTAL_CODE = "POSTAL_CODE"
    CITY = "CITY"
    COUNTRY = "COUNTRY"
    # Document-structure entities
    RECIPIENT = "RECIPIENT"
    SALUTATION_NAME = "SALUTATION_NAME"
    SIGNATURE = "SIGNATURE"
    LETTER_DATE = "LETTER_DATE"
    REFERENCE_LINE = "REFERENCE_LINE"
    PARTY = "PARTY"
    AUTHOR = "AUTHOR"
    VENDOR_NAME = "VENDOR_NAME"
    UNKNOWN = "UNKNOWN"


class DetectionSource(StrEnum):
    PATTERN = "PATTERN"
    MODEL = "MODEL"
    BOTH = "BOTH"
    RULE = "RULE"
    MANUAL = "MANUAL"


class ValidationStatus(StrEnum):
    VALID = "VALID"
    INVALID = "INVALID"
    UNVERIFIED = "UNVERIFIED"


class AddressPattern(StrEnum):
    PRIMARY = "PRIMARY"
    INTERNATIONAL = "INTERNATIONAL"
    ALTERNATE = "ALTERNATE"
    PARTIAL = "PARTIAL"
    NONE = "NONE"


class DocumentType(StrEnum):
    INVOICE = "invoice"
    LETTER = "letter"
    CONTRACT = "contract"
    REPORT = "report"
    MEDICAL = "medical"
    LEGAL = "legal"
    CORRESPONDENCE = "correspondence"
    FORM = "form"
    UNKNOWN = "unknown"


ADDRESS_COMPONENT_TYPES: frozenset[EntityType] = frozenset({
    EntityType.STREET_NAME,
    EntityType.STREET_NUMBER,
    EntityType.POSTAL_CODE,
    EntityType.CITY,
    EntityType.COUNTRY,
})


def _new_id() -> str:
    return uuid.uuid4().hex


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


@dataclass
class Entity:
    """A detected span believed to be one instance of a PII category."""

    type: EntityType
    start: int
    end: int
    text: str
    confidence: float
    source: DetectionSource
    validation: ValidationStatus = ValidationStatus.UNVERIFIED
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    linked: bool = False
    flagged_for_review: bool = False

    def __post_init__(self) -> None:
        if self.start < 0 or self.start >= self.end:
            raise ValueError(
                f"entity span must satisfy 0 <= start < end; got [{self.start}, {self.end})"
            )
        self.confidence = _clamp(self.confidence)
        if self.source == DetectionSource.MANUAL:
            self.confidence = 1.0

    @property
    def length(self) -> int:
        return self.end - self.start

    def set_confidence(self, value: float) -> None:
        """Update confidence, clamped to [0, 1].  MANUAL entities stay at 1.0."""
        if self.source == DetectionSource.MANUAL:
            return
        self.confidence = _clamp(value)

    def overlaps(self, other: Entity) -> bool:
        return self.start < other.end and other.start < self.end


def is_address_component(entity: Entity) -> bool:
    return entity.type in ADDRESS_COMPONENT_TYPES


@dataclass
class GroupedAddress(Entity):
    """A composite address that exclusively owns its linked components.

    ``breakdown`` maps field names (street, number, postal, city, country)
    to the covered text of the owning component.
    """

    components: list[Entity] = field(default_factory=list)
    pattern: AddressPattern = AddressPattern.NONE
    breakdown: dict[str, str | None] = field(default_factory=dict)
    scoring_factors: list[dict[str, Any]] = field(default_factory=list)
    auto_anonymize: bool = False

    def component_types(self) -> set[EntityType]:
        return {c.type for c in self.components}


@dataclass(frozen=True)
class DocumentClassification:
    """Single-shot document type decision.

    ``features`` lists the names of the signals that fired (keyword and
    structure identifiers, never document text).
    """

    type: DocumentType
    confidence: float
    language: str
    features: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1]; got {self.confidence}")

"""Validator base class and shared confidence levels.

Security contract
-----------------
``Validator.validate`` is a template method: it compares the input length
against ``max_length`` **before** calling ``_validate``.  Oversized input
is rejected without any regular expression or parser touching it, so a
crafted pathological string costs O(1) regardless of its content.

Validators never raise on bad input; malformed text yields
``ValidationResult(is_valid=False, ...)``.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from anonymizer.pii.entities import EntityType

logger = logging.getLogger(__name__)


class Confidence:
    """Confidence levels shared by all validators."""

    CHECKSUM_VALID = 0.95
    FORMAT_VALID = 0.90
    STANDARD = 0.85
    KNOWN_VALID = 0.82
    MODERATE = 0.75
    WEAK = 0.50
    INVALID_FORMAT = 0.40
    FAILED = 0.30
    FALSE_POSITIVE = 0.20


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    confidence: float
    reason: str = ""

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1]; got {self.confidence}")


def max_length_result(max_length: int) -> ValidationResult:
    return ValidationResult(
        is_valid=False,
        confidence=Confidence.FAILED,
        reason=f"Input exceeds maximum length ({max_length})",
    )


class Validator(ABC):
    """One format validator per externally visible entity type.

    Subclasses set ``entity_type``, ``name`` and ``max_length`` (with the
    rationale for the limit next to it) and implement ``_validate``.
    """

    entity_type: EntityType
    name: str
    max_length: int

    def validate(
        self,
        text: str,
        *,
        context: str | None = None,
        offset: int | None = None,
    ) -> ValidationResult:
        """Validate *text*; optional *context* / *offset* locate it in the document.

        The length guard always runs first.
        """
        if not isinstance(text, str):
            return ValidationResult(False, Confidence.FAILED, "Input is not a string")
        if len(text) > self.max_length:
            logger.debug(
                "validator: type=%s rejected length=%d max=%d",
                self.entity_type,
                len(text),
                self.max_length,
            )
            return max_length_result(self.max_length)
        return self._validate(text, context=context, offset=offset)

    @abstractmethod
    def _validate(
        self,
        text: str,
        *,
        context: str | None,
        offset: int | None,
    ) -> ValidationResult:
        ...

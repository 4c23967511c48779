"""Bare Swiss postal-code check.

Helper of ``SwissAddressValidator`` only.  It shares the SWISS_ADDRESS
entity type with its owner and is therefore deliberately left out of the
registry's type map, where it would overwrite the owning validator.
"""
from __future__ import annotations

import re

from anonymizer.pii.entities import EntityType
from anonymizer.validators.base import Confidence, ValidationResult, Validator

SWISS_POSTAL_MIN: int = 1000
SWISS_POSTAL_MAX: int = 9699

_POSTAL_RE = re.compile(r"\b([1-9]\d{3})\b")


class SwissPostalCodeValidator(Validator):
    entity_type = EntityType.SWISS_ADDRESS
    name = "SwissPostalCodeValidator"
    # A postal code with its city name; 100 covers the longest commune names.
    max_length = 100

    def _validate(self, text, *, context=None, offset=None) -> ValidationResult:
        match = _POSTAL_RE.search(text)
        if match is None:
            return ValidationResult(False, Confidence.INVALID_FORMAT, "No valid postal code found")

        code = int(match.group(1))
        if not SWISS_POSTAL_MIN <= code <= SWISS_POSTAL_MAX:
            return ValidationResult(False, Confidence.WEAK, "Postal code outside Swiss range")

        return ValidationResult(True, Confidence.STANDARD)


def validate_swiss_postal_code(text: str) -> bool:
    return SwissPostalCodeValidator().validate(text).is_valid


def validate_swiss_postal_code_full(text: str) -> ValidationResult:
    return SwissPostalCodeValidator().validate(text)

"""Phone number validator backed by ``phonenumbers``.

Numbers without an international prefix are interpreted as Swiss.
Swiss mobile numbers (07x) get the highest confidence; any other number
that ``phonenumbers`` accepts for its region is moderately confident.
"""
from __future__ import annotations

import re

import phonenumbers

from anonymizer.pii.entities import EntityType
from anonymizer.validators.base import Confidence, ValidationResult, Validator

DEFAULT_REGION: str = "CH"
MIN_DIGITS: int = 9
MAX_DIGITS: int = 15

_NON_DIGIT_RE = re.compile(r"\D")
_MOBILE_TYPES = frozenset({
    phonenumbers.PhoneNumberType.MOBILE,
    phonenumbers.PhoneNumberType.FIXED_LINE_OR_MOBILE,
})


class PhoneValidator(Validator):
    entity_type = EntityType.PHONE
    name = "PhoneValidator"
    # E.164 allows 15 digits; separators, "+" and "(0)" add up to 10 more.
    max_length = 25

    def _validate(self, text, *, context=None, offset=None) -> ValidationResult:
        digits = _NON_DIGIT_RE.sub("", text)
        if not MIN_DIGITS <= len(digits) <= MAX_DIGITS:
            return ValidationResult(False, Confidence.FAILED, f"Invalid length: {len(digits)} digits")

        try:
            parsed = phonenumbers.parse(text, DEFAULT_REGION)
        except phonenumbers.NumberParseException:
            return ValidationResult(False, Confidence.FAILED, "Not a parseable phone number")

        if not phonenumbers.is_valid_number(parsed):
            return ValidationResult(False, Confidence.WEAK, "No recognized number plan for this number")

        region = phonenumbers.region_code_for_number(parsed)
        if region == DEFAULT_REGION and phonenumbers.number_type(parsed) in _MOBILE_TYPES:
            return ValidationResult(True, Confidence.FORMAT_VALID, "Swiss mobile number")

        return ValidationResult(True, Confidence.MODERATE, f"Valid number for region {region}")


def validate_phone(text: str) -> bool:
    return PhoneValidator().validate(text).is_valid


def validate_phone_full(text: str) -> ValidationResult:
    return PhoneValidator().validate(text)

"""IBAN validator (ISO 13616, Mod 97-10) backed by python-stdnum."""
from __future__ import annotations

import re

from stdnum import iban as stdnum_iban
from stdnum.exceptions import InvalidChecksum, ValidationError

from anonymizer.pii.entities import EntityType
from anonymizer.validators.base import Confidence, ValidationResult, Validator

MIN_IBAN_LENGTH: int = 15

# Expected compact length per country for the markets this system serves.
IBAN_LENGTHS: dict[str, int] = {
    "CH": 21, "LI": 21, "DE": 22, "AT": 20, "FR": 27, "IT": 27,
    "ES": 24, "NL": 18, "BE": 16, "LU": 20, "GB": 22, "IE": 22,
    "PT": 25, "GR": 27, "PL": 28, "CZ": 24, "SK": 24, "HU": 28,
    "SE": 24, "DK": 18, "NO": 15, "FI": 18,
}

_WHITESPACE_RE = re.compile(r"\s+")


class IbanValidator(Validator):
    entity_type = EntityType.IBAN
    name = "IbanValidator"
    # ISO 13616 allows 34 characters; printed IBANs add up to 8 group spaces.
    max_length = 42

    def _validate(self, text, *, context=None, offset=None) -> ValidationResult:
        iban = _WHITESPACE_RE.sub("", text).upper()

        if len(iban) < MIN_IBAN_LENGTH:
            return ValidationResult(False, Confidence.FAILED, f"Too short: {len(iban)} characters")

        country = iban[:2]
        expected = IBAN_LENGTHS.get(country)
        if expected is not None and len(iban) != expected:
            return ValidationResult(
                False,
                Confidence.INVALID_FORMAT,
                f"Invalid length for {country}: {len(iban)} (expected {expected})",
            )

        try:
            stdnum_iban.validate(iban, check_country=False)
        except InvalidChecksum:
            return ValidationResult(False, Confidence.INVALID_FORMAT, "Checksum validation failed (Mod 97-10)")
        except ValidationError as exc:
            return ValidationResult(False, Confidence.INVALID_FORMAT, f"Invalid IBAN format: {exc.message}")

        return ValidationResult(True, Confidence.CHECKSUM_VALID)


def validate_iban(text: str) -> bool:
    return IbanValidator().validate(text).is_valid


def validate_iban_full(text: str) -> ValidationResult:
    return IbanValidator().validate(text)

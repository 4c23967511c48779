"""Swiss social security number (AHV/AVS, ``756.XXXX.XXXX.XX``) validator.

The number is 13 digits, starts with the ISO country code 756 and ends
with an EAN-13 check digit.  Checking is delegated to ``stdnum.ch.ssn``.
"""
from __future__ import annotations

import re

from stdnum.ch import ssn as stdnum_ssn
from stdnum.exceptions import InvalidChecksum, InvalidComponent, ValidationError

from anonymizer.pii.entities import EntityType
from anonymizer.validators.base import Confidence, ValidationResult, Validator

_NON_DIGIT_RE = re.compile(r"\D")


class SwissAvsValidator(Validator):
    entity_type = EntityType.SWISS_AVS
    name = "SwissAvsValidator"
    # 13 digits + 3 dots, with slack for spaced or double-separated forms.
    max_length = 20

    def _validate(self, text, *, context=None, offset=None) -> ValidationResult:
        digits = _NON_DIGIT_RE.sub("", text)

        if len(digits) != 13:
            return ValidationResult(
                False, Confidence.FAILED, f"Invalid length: {len(digits)} digits (expected 13)"
            )

        try:
            stdnum_ssn.validate(digits)
        except InvalidComponent:
            return ValidationResult(False, Confidence.FAILED, "Does not start with Swiss country code 756")
        except InvalidChecksum:
            return ValidationResult(False, Confidence.INVALID_FORMAT, "Checksum mismatch (EAN-13)")
        except ValidationError as exc:
            return ValidationResult(False, Confidence.FAILED, f"Invalid AVS number: {exc.message}")

        return ValidationResult(True, Confidence.CHECKSUM_VALID)


def validate_swiss_avs(text: str) -> bool:
    return SwissAvsValidator().validate(text).is_valid


def validate_swiss_avs_full(text: str) -> ValidationResult:
    return SwissAvsValidator().validate(text)

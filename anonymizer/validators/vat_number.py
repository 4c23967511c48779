"""VAT / company identifier validator.

Swiss UIDs (``CHE-123.456.789`` with an optional ``MWST``/``TVA``/``IVA``
suffix) are checked with ``stdnum.ch.uid`` (mod-11).  German, French,
Italian and Austrian VAT numbers are checked with ``stdnum.eu.vat``.
"""
from __future__ import annotations

import re

from stdnum.ch import uid as stdnum_uid
from stdnum.eu import vat as stdnum_vat
from stdnum.exceptions import InvalidChecksum, ValidationError

from anonymizer.pii.entities import EntityType
from anonymizer.validators.base import Confidence, ValidationResult, Validator

EU_VAT_PREFIXES: tuple[str, ...] = ("DE", "FR", "IT", "AT")

_NON_DIGIT_RE = re.compile(r"\D")
_SEPARATORS_RE = re.compile(r"[\s.\-]")
_SWISS_SUFFIX_RE = re.compile(r"\s*(MWST|TVA|IVA)\s*$")


class VatNumberValidator(Validator):
    entity_type = EntityType.VAT_NUMBER
    name = "VatNumberValidator"
    # "CHE-123.456.789 MWST" is 20 chars; EU numbers are at most 14.
    max_length = 30

    def _validate(self, text, *, context=None, offset=None) -> ValidationResult:
        value = text.strip().upper()

        if value.startswith("CHE"):
            return self._validate_swiss(_SWISS_SUFFIX_RE.sub("", value))

        compact = _SEPARATORS_RE.sub("", value)
        if compact[:2] in EU_VAT_PREFIXES:
            try:
                stdnum_vat.validate(compact)
            except InvalidChecksum:
                return ValidationResult(False, Confidence.WEAK, f"{compact[:2]} VAT checksum failed")
            except ValidationError as exc:
                return ValidationResult(False, Confidence.INVALID_FORMAT, f"Invalid {compact[:2]} VAT number: {exc.message}")
            return ValidationResult(True, Confidence.STANDARD)

        return ValidationResult(False, Confidence.INVALID_FORMAT, "Unrecognized VAT format")

    @staticmethod
    def _validate_swiss(value: str) -> ValidationResult:
        digits = _NON_DIGIT_RE.sub("", value)
        if len(digits) != 9:
            return ValidationResult(
                False, Confidence.INVALID_FORMAT, f"Invalid Swiss VAT length: {len(digits)} digits"
            )
        try:
            stdnum_uid.validate("CHE" + digits)
        except InvalidChecksum:
            return ValidationResult(False, Confidence.WEAK, "Swiss UID checksum failed")
        except ValidationError as exc:
            return ValidationResult(False, Confidence.INVALID_FORMAT, f"Invalid Swiss UID: {exc.message}")
        return ValidationResult(True, Confidence.FORMAT_VALID)


def validate_vat_number(text: str) -> bool:
    return VatNumberValidator().validate(text).is_valid


def validate_vat_number_full(text: str) -> ValidationResult:
    return VatNumberValidator().validate(text)

"""Date validator for numeric and spelled-out European dates.

Accepted shapes
---------------
numeric     : ``DD.MM.YYYY``, ``DD/MM/YY``, ``DD-MM-YYYY`` (day first)
month name  : ``12. März 2024``, ``1er janvier 2023``, ``5 maggio 24``,
              ``March 3, 2024``, month names from ``locale_data``

Two-digit years pivot at 30: ``31``-``99`` are 19xx, ``00``-``30`` are 20xx.
"""
from __future__ import annotations

import datetime
import re

from anonymizer.pii.entities import EntityType
from anonymizer.validators.base import Confidence, ValidationResult, Validator
from anonymizer.validators.locale_data import get_month_number

MIN_YEAR: int = 1900
MAX_YEAR: int = 2100

_NUMERIC_RE = re.compile(r"(\d{1,2})[./-](\d{1,2})[./-](\d{2,4})\b")
_DAY_MONTH_YEAR_RE = re.compile(r"(\d{1,2})(?:\.|er|st|nd|rd|th)?\s*([^\W\d_]+)\.?,?\s*(\d{2,4})\b")
_MONTH_DAY_YEAR_RE = re.compile(r"([^\W\d_]+)\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{2,4})\b")


def _expand_year(year: int) -> int:
    if year < 100:
        return year + (1900 if year > 30 else 2000)
    return year


def parse_date(text: str) -> tuple[int, int, int] | None:
    """Return ``(day, month, year)`` without range checks, or None."""
    match = _NUMERIC_RE.search(text)
    if match:
        return int(match.group(1)), int(match.group(2)), _expand_year(int(match.group(3)))

    lowered = text.lower()
    match = _DAY_MONTH_YEAR_RE.search(lowered)
    if match:
        month = get_month_number(match.group(2))
        if month is not None:
            return int(match.group(1)), month, _expand_year(int(match.group(3)))

    match = _MONTH_DAY_YEAR_RE.search(lowered)
    if match:
        month = get_month_number(match.group(1))
        if month is not None:
            return int(match.group(2)), month, _expand_year(int(match.group(3)))

    return None


class DateValidator(Validator):
    entity_type = EntityType.DATE
    name = "DateValidator"
    # "31. Dezember 2024" style dates stay under 25 chars in all four
    # languages; 40 leaves room for weekday-free ordinal variants.
    max_length = 40

    def _validate(self, text, *, context=None, offset=None) -> ValidationResult:
        parsed = parse_date(text)
        if parsed is None:
            return ValidationResult(False, Confidence.INVALID_FORMAT, "Could not parse date")

        day, month, year = parsed
        if not 1 <= month <= 12:
            return ValidationResult(False, Confidence.FAILED, "Invalid month")

        if not MIN_YEAR <= year <= MAX_YEAR:
            return ValidationResult(False, Confidence.INVALID_FORMAT, "Year out of range")

        try:
            datetime.date(year, month, day)
        except ValueError:
            return ValidationResult(False, Confidence.FAILED, "Invalid day for month")

        return ValidationResult(True, Confidence.STANDARD)


def validate_date(text: str) -> bool:
    return DateValidator().validate(text).is_valid


def validate_date_full(text: str) -> ValidationResult:
    return DateValidator().validate(text)

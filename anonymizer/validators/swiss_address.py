"""Swiss ``<postal code> <city>`` validator.

Four-digit postal codes between 1900 and 2099 collide with years
("2019 wurde ...", "1998 Bericht"), so codes in that range get extra
false-positive checks against the surrounding document text:

- known Valais / Neuchâtel cities in that range are accepted outright;
- a month name or a non-city word after the number rejects it;
- a ``DD.MM.`` prefix or a date keyword right before it rejects it;
- a sentence boundary right after it, with no street word in the
  preceding 50 characters, rejects it.

The position in the document comes either from a caller-supplied
``offset`` or, when only ``context`` is given, from a substring search.
Both produce the same result.
"""
from __future__ import annotations

import re

from anonymizer.pii.entities import EntityType
from anonymizer.validators.base import Confidence, ValidationResult, Validator
from anonymizer.validators.locale_data import MONTH_NAMES
from anonymizer.validators.swiss_postal_code import SwissPostalCodeValidator

YEAR_RANGE_MIN: int = 1900
YEAR_RANGE_MAX: int = 2099
MIN_CITY_LENGTH: int = 3

NON_CITY_WORDS: frozenset[str] = frozenset({
    "attestation", "rapport", "report", "bericht", "document", "dokument",
    "contrat", "contract", "vertrag", "contratto",
    "version", "edition", "ausgabe", "edizione",
    "année", "annee", "year", "jahr", "anno",
    "execution", "exécution", "ausführung", "esecuzione",
    "pour", "and", "oder", "from", "with", "date", "depuis", "since", "ab",
    "fondation", "collective", "stiftung", "fondazione",
    "l'exécution", "l'execution", "l'année", "l'annee",
})

KNOWN_SWISS_CITIES_IN_YEAR_RANGE: frozenset[str] = frozenset({
    "sion", "sierre", "martigny", "monthey", "saxon", "fully", "leytron",
    "chamoson", "conthey", "vétroz", "vetroz", "ardon", "riddes", "saillon",
    "brig", "visp", "naters", "zermatt", "saas-fee",
    "neuchâtel", "neuchatel", "la chaux-de-fonds", "le locle", "fleurier",
    "couvet", "môtiers", "motiers", "travers", "boudry", "cortaillod",
    "colombier", "auvernier", "bevaix", "gorgier", "saint-aubin",
})

_ADDRESS_RE = re.compile(r"^(?:CH-)?(\d{4})\b(.*)$", re.DOTALL)
_DATE_PREFIX_RE = re.compile(r"\d{1,2}[./]\d{1,2}[./]?\s*$")
_DATE_KEYWORD_RE = re.compile(
    r"\b(date|depuis|since|ab|from|le|am|on|year|année|annee|jahr|anno|en|im|in|vom|du)\s*[:.]?\s*$",
    re.IGNORECASE,
)
_SENTENCE_END_RE = re.compile(r"^\s*[.;,!?\n]")
_STREET_CONTEXT_RE = re.compile(r"Rue|Route|Rte|Chemin|Strasse|Str\.|Via|Avenue|Av\.", re.IGNORECASE)

_postal_helper = SwissPostalCodeValidator()


def _locate(text: str, context: str | None, offset: int | None) -> int | None:
    if context is None:
        return None
    if offset is not None:
        return offset if context[offset:offset + len(text)] == text else None
    position = context.find(text)
    return position if position >= 0 else None


def _is_known_year_range_city(city: str) -> bool:
    lowered = city.lower()
    return any(
        lowered == name or lowered.startswith((name + " ", name + ","))
        for name in KNOWN_SWISS_CITIES_IN_YEAR_RANGE
    )


def _check_year_false_positive(
    text: str,
    city: str,
    first_word: str,
    context: str | None,
    position: int | None,
) -> ValidationResult:
    if _is_known_year_range_city(city):
        return ValidationResult(True, Confidence.STANDARD, "Known Swiss city in year range")

    if first_word in MONTH_NAMES:
        return ValidationResult(False, Confidence.FALSE_POSITIVE, "Year followed by month name")

    if first_word in NON_CITY_WORDS:
        return ValidationResult(False, Confidence.FAILED, "Year followed by non-city word")

    if context is not None and position is not None:
        if position > 0:
            before = context[max(0, position - 20):position]
            if _DATE_PREFIX_RE.search(before):
                return ValidationResult(False, Confidence.FALSE_POSITIVE, "Preceded by date pattern (DD.MM. or DD/MM)")
            if _DATE_KEYWORD_RE.search(before):
                return ValidationResult(False, Confidence.FAILED, "Preceded by date-related keyword")

        end = position + len(text)
        if end < len(context):
            after = context[end:end + 15]
            if _SENTENCE_END_RE.match(after):
                preceding = context[max(0, position - 50):position]
                if not _STREET_CONTEXT_RE.search(preceding):
                    return ValidationResult(
                        False, Confidence.INVALID_FORMAT, "Year at sentence boundary without street context"
                    )

    return ValidationResult(True, Confidence.MODERATE, "Postal code in year range")


class SwissAddressValidator(Validator):
    entity_type = EntityType.SWISS_ADDRESS
    name = "SwissAddressValidator"
    # Postal code + city, optionally with street line; 200 chars covers
    # the longest real Swiss address lines with generous slack.
    max_length = 200

    def _validate(self, text, *, context=None, offset=None) -> ValidationResult:
        match = _ADDRESS_RE.match(text.strip())
        if match is None:
            return ValidationResult(False, Confidence.FAILED, "No leading 4-digit postal code")

        code = int(match.group(1))
        if not 1000 <= code <= 9999:
            return ValidationResult(False, Confidence.FAILED, "Postal code outside Swiss range (1000-9999)")

        city = match.group(2).strip()
        if len(city) < MIN_CITY_LENGTH:
            return ValidationResult(False, Confidence.FAILED, "City name too short")

        first_word = city.split()[0].lower().rstrip(".,;:")

        if YEAR_RANGE_MIN <= code <= YEAR_RANGE_MAX:
            position = _locate(text, context, offset)
            return _check_year_false_positive(text, city, first_word, context, position)

        if first_word in NON_CITY_WORDS:
            return ValidationResult(False, Confidence.INVALID_FORMAT, "First word is not a valid city name")

        if not _postal_helper.validate(match.group(1)).is_valid:
            return ValidationResult(True, Confidence.MODERATE, "Postal code beyond assigned Swiss range")

        return ValidationResult(True, Confidence.KNOWN_VALID)


def validate_swiss_address(text: str, context: str | None = None) -> bool:
    return SwissAddressValidator().validate(text, context=context).is_valid


def validate_swiss_address_full(
    text: str,
    context: str | None = None,
    offset: int | None = None,
) -> ValidationResult:
    return SwissAddressValidator().validate(text, context=context, offset=offset)

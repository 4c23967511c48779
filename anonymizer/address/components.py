"""Address component detection.

Finds the building blocks of postal addresses in free text:

================  =========================================================
component         detected by
================  =========================================================
STREET_NAME       de compound suffixes (``Bahnhofstrasse``), de/en trailing
                  street words (``Obere Gasse``, ``Baker Street``), fr/it
                  leading street words (``Rue de Lausanne``, ``Via Roma``)
STREET_NUMBER     ``12``, ``12a``, ``12-14`` directly before or after a
                  street name
POSTAL_CODE       CH four-digit codes (``CH-`` prefix allowed), DE/FR/IT
                  five-digit codes, ``A-`` prefixed AT codes; only when a
                  capitalised word follows on the same line or the code is
                  country-prefixed
CITY              gazetteer names, and the capitalised words right after a
                  postal code
COUNTRY           country names in de/fr/it/en, and ``CH`` alone at the end
                  of a line
================  =========================================================

Gazetteer hits inside a street name (``Lausanne`` in ``Rue de Lausanne``)
are not cities.  Overlapping components are resolved by type priority and
then by length.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from anonymizer.address.postal_data import (
    gazetteer_names,
    has_swiss_prefix,
    is_known_city,
    is_known_postal_code,
    is_plausible_foreign_postal_code,
    is_valid_swiss_postal_code_format,
)
from anonymizer.pii.entities import DetectionSource, Entity, EntityType

logger = logging.getLogger(__name__)

_UPPER = "A-ZÀ-ÖØ-Þ"
_LOWER = "a-zß-öø-ÿ"
_WORD = f"[{_UPPER}][{_LOWER}'’]+(?:-[{_UPPER}]?[{_LOWER}'’]+)*"

_DE_COMPOUND_SUFFIXES = "strasse|straße|str\\.|gasse|weg|platz|allee|ring|damm|rain|graben|halde|matte"
_DE_STREET_WORDS = "Strasse|Straße|Gasse|Weg|Platz|Allee|Ring|Graben"
_EN_STREET_WORDS = "Street|Road|Rd\\.|Lane|Ln\\.|Avenue|Ave\\.|Drive|Court|Way|Boulevard|Square"
_ROMANCE_STREET_WORDS = (
    "rue|avenue|av\\.|boulevard|bd|chemin|ch\\.|place|route|rte|allée|impasse|passage|quai|"
    "via|viale|piazza|corso|vicolo|largo|strada"
)
_ROMANCE_STREET_WORDS_CAPITALISED = "|".join(
    word[0].upper() + word[1:] for word in _ROMANCE_STREET_WORDS.split("|")
)
_ROMANCE_ARTICLES = (
    r"(?:(?:de[ \t]+la|de|du|des|della|del|dei|delle|degli|di|da)[ \t]+|(?:de[ \t]+l|d|dell)['’])?"
)

STREET_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("de_compound", re.compile(
        rf"(?<!\w)[{_UPPER}][{_LOWER}]+(?:-[{_UPPER}]?[{_LOWER}]+)*(?:{_DE_COMPOUND_SUFFIXES})(?!\w)"
    )),
    ("de_words", re.compile(rf"(?<!\w){_WORD}[ \t]+(?:{_DE_STREET_WORDS})(?!\w)")),
    ("en_words", re.compile(rf"(?<!\w){_WORD}(?:[ \t]+{_WORD}){{0,2}}[ \t]+(?:{_EN_STREET_WORDS})(?![\w])")),
    ("romance_prefix", re.compile(
        rf"(?<!\w)(?:{_ROMANCE_STREET_WORDS_CAPITALISED})[ \t]+{_ROMANCE_ARTICLES}{_WORD}(?:[ \t]+{_WORD}){{0,2}}"
    )),
    # "12, rue du Lac": lower-case street words only after a house number.
    ("romance_numbered", re.compile(
        rf"(?:(?<=\d )|(?<=\d, )|(?<=\d[a-z] )|(?<=\d[a-z], ))(?:{_ROMANCE_STREET_WORDS})[ \t]+{_ROMANCE_ARTICLES}{_WORD}(?:[ \t]+{_WORD}){{0,2}}"
    )),
)
MIN_STREET_LENGTH = 5

_HOUSE_NUMBER_RE = re.compile(r"(?<![\w.])\d{1,4}[a-zA-Z]?(?:[ \t]*[-–][ \t]*\d{1,4}[a-zA-Z]?)?(?![\w.])")
# Maximum separator between a street name and its number: ", " or " ".
MAX_NUMBER_GAP = 2

_SWISS_POSTAL_RE = re.compile(r"(?<![\w.+-])(?:CH[- ]?)?[1-9]\d{3}(?![\w.,'’-])")
_FOREIGN_POSTAL_RE = re.compile(r"(?<![\w.+-])(?:(?:D|F|I)[- ])?\d{5}(?![\w.,'’-])|(?<![\w.+-])A[- ]\d{4}(?![\w.,'’-])")
_CITY_AFTER_POSTAL_RE = re.compile(rf"[ \t]+(?P<city>{_WORD}(?:[ \t]+(?:{_WORD}|am|an|im|bei|sur|sous|les|le|la|di)){{0,3}})")
# Capitalised words that follow amounts and years rather than postal codes.
_NOT_CITIES: frozenset[str] = frozenset({
    "chf", "eur", "euro", "franken", "francs", "franchi", "fr", "stück", "pièces", "pezzi",
    "jahre", "ans", "anni", "years", "seiten", "pages", "pagine", "mitarbeiter", "personen",
})
# Postal codes that also read as years need a corroborating city.
_YEAR_LIKE = range(1900, 2100)

COUNTRY_NAMES: dict[str, tuple[str, ...]] = {
    "CH": ("Schweiz", "Suisse", "Svizzera", "Switzerland", "Svizra"),
    "DE": ("Deutschland", "Germany", "Allemagne", "Germania"),
    "FR": ("Frankreich", "France", "Francia"),
    "IT": ("Italien", "Italie", "Italia", "Italy"),
    "AT": ("Österreich", "Autriche", "Austria"),
    "LI": ("Liechtenstein",),
}
_COUNTRY_RE = re.compile(
    r"(?<!\w)(?:"
    + "|".join(re.escape(n) for names in COUNTRY_NAMES.values() for n in names)
    + r")(?!\w)"
)
_COUNTRY_CODE_RE = re.compile(r"(?:(?<=,)|^)[ \t]*(?P<code>CH)[ \t]*$", re.MULTILINE)
_COUNTRY_BY_NAME: dict[str, str] = {
    name.lower(): code for code, names in COUNTRY_NAMES.items() for name in names
}

# Higher priority wins when two components overlap.
_PRIORITY: dict[EntityType, int] = {
    EntityType.STREET_NAME: 0,
    EntityType.POSTAL_CODE: 1,
    EntityType.STREET_NUMBER: 2,
    EntityType.COUNTRY: 3,
    EntityType.CITY: 4,
}

STREET_CONFIDENCE = 0.70
NUMBER_CONFIDENCE = 0.60
POSTAL_CONFIDENCE = 0.75
KNOWN_POSTAL_CONFIDENCE = 0.90
CITY_CONFIDENCE = 0.60
KNOWN_CITY_CONFIDENCE = 0.80
COUNTRY_CONFIDENCE = 0.85


@dataclass(frozen=True)
class _Candidate:
    type: EntityType
    start: int
    end: int
    confidence: float
    rule: str


def _gazetteer_re() -> re.Pattern[str]:
    alternation = "|".join(re.escape(name) for name in gazetteer_names())
    return re.compile(rf"(?<![\w-])(?:{alternation})(?![\w-])", re.IGNORECASE)


class AddressComponentDetector:
    """Detect address components; stateless apart from the compiled gazetteer."""

    def __init__(self) -> None:
        self._gazetteer = _gazetteer_re()

    # ------------------------------------------------------------------
    # Individual component types
    # ------------------------------------------------------------------

    def _streets(self, text: str) -> list[_Candidate]:
        found = []
        for rule, pattern in STREET_PATTERNS:
            for match in pattern.finditer(text):
                if match.end() - match.start() < MIN_STREET_LENGTH:
                    continue
                found.append(_Candidate(
                    EntityType.STREET_NAME, match.start(), match.end(), STREET_CONFIDENCE, rule,
                ))
        return found

    def _numbers(self, text: str, streets: list[_Candidate]) -> list[_Candidate]:
        found = []
        for match in _HOUSE_NUMBER_RE.finditer(text):
            start, end = match.span()
            for street in streets:
                after = 0 <= start - street.end <= MAX_NUMBER_GAP and _is_separator(text[street.end:start])
                before = 0 <= street.start - end <= MAX_NUMBER_GAP and _is_separator(text[end:street.start])
                if after or before:
                    found.append(_Candidate(
                        EntityType.STREET_NUMBER, start, end, NUMBER_CONFIDENCE, "house_number",
                    ))
                    break
        return found

    def _postal_codes(self, text: str) -> list[tuple[_Candidate, _Candidate | None]]:
        """Postal codes paired with the city that follows them, if any."""
        found = []
        for regex, swiss in ((_SWISS_POSTAL_RE, True), (_FOREIGN_POSTAL_RE, False)):
            for match in regex.finditer(text):
                code = match.group(0)
                if swiss and not is_valid_swiss_postal_code_format(code):
                    continue
                if not swiss and not is_plausible_foreign_postal_code(code):
                    continue

                city = _CITY_AFTER_POSTAL_RE.match(text, match.end())
                city_text = city.group("city") if city else None
                if city_text is not None and city_text.split()[0].lower() in _NOT_CITIES:
                    city_text = None

                prefixed = (swiss and has_swiss_prefix(code)) or (not swiss and not code[0].isdigit())
                if city_text is None and not prefixed:
                    continue
                known = swiss and is_known_postal_code(code)
                if (
                    swiss and not prefixed and not known and int(code) in _YEAR_LIKE
                    and not is_known_city(city_text or "")
                ):
                    continue

                postal = _Candidate(
                    EntityType.POSTAL_CODE,
                    match.start(),
                    match.end(),
                    KNOWN_POSTAL_CONFIDENCE if known else POSTAL_CONFIDENCE,
                    "swiss_postal" if swiss else "foreign_postal",
                )
                city_candidate = None
                if city is not None and city_text is not None:
                    city_known = is_known_city(city_text)
                    city_candidate = _Candidate(
                        EntityType.CITY,
                        city.start("city"),
                        city.end("city"),
                        KNOWN_CITY_CONFIDENCE if city_known else CITY_CONFIDENCE,
                        "city_after_postal",
                    )
                found.append((postal, city_candidate))
        return found

    def _gazetteer_cities(self, text: str, streets: list[_Candidate]) -> list[_Candidate]:
        found = []
        for match in self._gazetteer.finditer(text):
            if not match.group(0)[0].isupper():
                continue
            start, end = match.span()
            if any(s.start <= start and end <= s.end for s in streets):
                continue
            found.append(_Candidate(EntityType.CITY, start, end, KNOWN_CITY_CONFIDENCE, "gazetteer"))
        return found

    @staticmethod
    def _countries(text: str) -> list[_Candidate]:
        found = [
            _Candidate(EntityType.COUNTRY, m.start(), m.end(), COUNTRY_CONFIDENCE, "country_name")
            for m in _COUNTRY_RE.finditer(text)
        ]
        found.extend(
            _Candidate(EntityType.COUNTRY, m.start("code"), m.end("code"), COUNTRY_CONFIDENCE, "country_code")
            for m in _COUNTRY_CODE_RE.finditer(text)
        )
        return found

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def detect(self, text: str) -> list[Entity]:
        """Return non-overlapping component entities ordered by position."""
        if not text:
            return []

        streets = self._streets(text)
        candidates: list[_Candidate] = list(streets)
        candidates.extend(self._numbers(text, streets))
        for postal, city in self._postal_codes(text):
            candidates.append(postal)
            if city is not None:
                candidates.append(city)
        candidates.extend(self._gazetteer_cities(text, streets))
        candidates.extend(self._countries(text))

        kept = _resolve_overlaps(candidates)
        entities = [
            Entity(
                type=c.type,
                start=c.start,
                end=c.end,
                text=text[c.start:c.end],
                confidence=c.confidence,
                source=DetectionSource.PATTERN,
                metadata={"component_rule": c.rule},
            )
            for c in kept
        ]
        # SAFETY: log only metadata
        logger.debug("address_components: found=%d", len(entities))
        return entities


def _is_separator(between: str) -> bool:
    return between.strip(" \t,") == ""


def _resolve_overlaps(candidates: list[_Candidate]) -> list[_Candidate]:
    ranked = sorted(
        candidates,
        key=lambda c: (_PRIORITY[c.type], -(c.end - c.start), c.start),
    )
    kept: list[_Candidate] = []
    for candidate in ranked:
        if any(candidate.start < k.end and k.start < candidate.end for k in kept):
            continue
        kept.append(candidate)
    kept.sort(key=lambda c: (c.start, c.end))
    return kept


def country_code(name: str) -> str | None:
    """ISO code for a country token found by the detector (``Suisse`` -> ``CH``)."""
    stripped = name.strip()
    if stripped.upper() in COUNTRY_NAMES:
        return stripped.upper()
    return _COUNTRY_BY_NAME.get(stripped.lower())

"""High-recall pattern catalogue for Swiss and EU documents.

These PatternDefinitions are loaded by ``PatternDetector`` as Presidio
``PatternRecognizer`` instances.  They are deliberately permissive: the
validation, context and address passes narrow them down later.

Locale codes
------------
CH      : Switzerland
EU      : Germany, Austria, France, Italy
GLOBAL  : locale independent

Flags
-----
Patterns are compiled with ``re.MULTILINE`` only.  Case-insensitive parts
(street keywords, month names) use scoped ``(?i:...)`` groups so that the
capitalisation of names and cities keeps its meaning.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

from anonymizer.pii.entities import EntityType
from anonymizer.validators.locale_data import MONTH_NAMES

LOCALE_GLOBAL = "GLOBAL"
LOCALE_CH = "CH"
LOCALE_EU = "EU"

DEFAULT_PATTERN_CONFIDENCE: float = 0.7
MIN_MATCH_LENGTH: int = 3

PATTERN_FLAGS: int = re.MULTILINE


@dataclass(frozen=True)
class PatternDefinition:
    """A single high-recall pattern.

    Attributes
    ----------
    name:         Presidio recogniser name; recorded in entity metadata.
    entity_type:  Entity type emitted on a match.
    regex:        Regular expression compiled with ``PATTERN_FLAGS``.
    score:        Candidate confidence when the pattern fires.
    locale:       Locale scope (see module-level constants).
    """
    name: str
    entity_type: EntityType
    regex: str
    score: float
    locale: str


# ---------------------------------------------------------------------------
# Shared fragments
# ---------------------------------------------------------------------------

_UPPER = "A-ZÀ-ÖØ-Þ"
_LOWER = "a-zß-öø-ÿ"
_CAP_WORD = f"[{_UPPER}][{_LOWER}']+"
# Saas-Fee, La Chaux-de-Fonds, Saint-Jean
_COMPOUND = f"{_CAP_WORD}(?:-(?:[{_LOWER}]+-)*[{_UPPER}][{_LOWER}']+)*"
_CITY = f"{_COMPOUND}(?:[ \\t]{_COMPOUND})*"
_ORG_WORD = f"(?:{_COMPOUND}|[A-Z]{{2,6}})"

_DAY = r"(?:0?[1-9]|[12]\d|3[01])"
_MONTH_ALTERNATION = "|".join(
    re.escape(name) for name in sorted(MONTH_NAMES, key=len, reverse=True)
)

_STREET_SUFFIXES = "strasse|straße|gasse|weg|platz|allee|ring|rain|graben|quai"
_STREET_PREFIXES = (
    "rue|avenue|av\\.|boulevard|bd|chemin|ch\\.|route|rte|place|allée|quai|impasse|"
    "via|viale|piazza|corso|vicolo|largo"
)
_STREET_PARTICLES = "de|du|des|la|le|della|del|dei|di"

_LEGAL_FORMS = r"AG|SA|GmbH|Sàrl|SARL|S\.A\.|Ltd|Inc|KG|SE|S\.p\.A\.|Srl|S\.r\.l\."


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------

HIGH_RECALL_PATTERNS: list[PatternDefinition] = [

    # =====================================================================
    # Identifiers
    # =====================================================================

    PatternDefinition(
        name="swiss_avs",
        entity_type=EntityType.SWISS_AVS,
        regex=r"\b756[.\s]?\d{4}[.\s]?\d{4}[.\s]?\d{2}\b",
        score=DEFAULT_PATTERN_CONFIDENCE,
        locale=LOCALE_CH,
    ),
    PatternDefinition(
        name="iban",
        entity_type=EntityType.IBAN,
        regex=r"\b[A-Z]{2}\d{2}[ ]?(?:[A-Z0-9]{4}[ ]?){2,7}[A-Z0-9]{1,4}\b",
        score=DEFAULT_PATTERN_CONFIDENCE,
        locale=LOCALE_GLOBAL,
    ),
    PatternDefinition(
        name="email",
        entity_type=EntityType.EMAIL,
        regex=r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",
        score=DEFAULT_PATTERN_CONFIDENCE,
        locale=LOCALE_GLOBAL,
    ),
    PatternDefinition(
        # CH, DE, FR, IT, AT with international prefix.
        name="phone_international",
        entity_type=EntityType.PHONE,
        regex=(
            r"(?:\+|\b00)(?:41|49|33|39|43)[\s.-]?(?:\(0\)[\s.-]?)?"
            r"\d{2,4}[\s.-]?\d{2,4}[\s.-]?\d{2,4}(?:[\s.-]?\d{2})?\b"
        ),
        score=DEFAULT_PATTERN_CONFIDENCE,
        locale=LOCALE_EU,
    ),
    PatternDefinition(
        name="phone_swiss_local",
        entity_type=EntityType.PHONE,
        regex=r"\b0\d{2}[\s.-]?\d{3}[\s.-]?\d{2}[\s.-]?\d{2}\b",
        score=DEFAULT_PATTERN_CONFIDENCE,
        locale=LOCALE_CH,
    ),
    PatternDefinition(
        name="vat_swiss_uid",
        entity_type=EntityType.VAT_NUMBER,
        regex=r"\bCHE[-\s]?\d{3}[.\s]?\d{3}[.\s]?\d{3}(?:[ \t]*(?:MWST|TVA|IVA))?\b",
        score=DEFAULT_PATTERN_CONFIDENCE,
        locale=LOCALE_CH,
    ),
    PatternDefinition(
        name="vat_eu",
        entity_type=EntityType.VAT_NUMBER,
        regex=r"\b(?:DE\d{9}|ATU\d{8}|FR[0-9A-Z]{2}\d{9}|IT\d{11})\b",
        score=DEFAULT_PATTERN_CONFIDENCE,
        locale=LOCALE_EU,
    ),
    PatternDefinition(
        # Swiss QR-bill reference: 27 digits, usually grouped 2+5x5.
        name="payment_reference_qr",
        entity_type=EntityType.PAYMENT_REF,
        regex=r"\b\d{2}[ ]?\d{5}[ ]?\d{5}[ ]?\d{5}[ ]?\d{5}[ ]?\d{5}\b",
        score=DEFAULT_PATTERN_CONFIDENCE,
        locale=LOCALE_CH,
    ),

    # =====================================================================
    # Addresses
    # =====================================================================

    PatternDefinition(
        name="swiss_postal_city",
        entity_type=EntityType.SWISS_ADDRESS,
        regex=rf"\b(?:CH-)?[1-9]\d{{3}}[ \t]+{_CITY}",
        score=DEFAULT_PATTERN_CONFIDENCE,
        locale=LOCALE_CH,
    ),
    PatternDefinition(
        name="eu_postal_city",
        entity_type=EntityType.EU_ADDRESS,
        regex=rf"\b(?:(?:D|A|F|I)-)?\d{{5}}[ \t]+{_CITY}",
        score=DEFAULT_PATTERN_CONFIDENCE,
        locale=LOCALE_EU,
    ),
    PatternDefinition(
        # Bahnhofstrasse 12, Seeweg 3a
        name="street_suffix",
        entity_type=EntityType.ADDRESS,
        regex=rf"\b[{_UPPER}][{_LOWER}]+(?i:{_STREET_SUFFIXES})[ \t]+\d{{1,4}}[a-z]?\b",
        score=DEFAULT_PATTERN_CONFIDENCE,
        locale=LOCALE_CH,
    ),
    PatternDefinition(
        # Rue de Lausanne 12, Via della Posta 4, Chemin des Vignes 3
        name="street_prefix",
        entity_type=EntityType.ADDRESS,
        regex=(
            rf"\b(?i:{_STREET_PREFIXES})(?:[ \t]+(?:{_STREET_PARTICLES}))*"
            rf"[ \t]+(?:l')?{_CITY},?[ \t]+\d{{1,4}}[a-z]?\b"
        ),
        score=DEFAULT_PATTERN_CONFIDENCE,
        locale=LOCALE_EU,
    ),

    # =====================================================================
    # Organisations
    # =====================================================================

    PatternDefinition(
        name="legal_entity_suffix",
        entity_type=EntityType.ORGANIZATION,
        regex=rf"\b{_ORG_WORD}(?:[ \t]+(?:&[ \t]+)?{_ORG_WORD}){{0,3}}[ \t]+(?:{_LEGAL_FORMS})(?![\w])",
        score=DEFAULT_PATTERN_CONFIDENCE,
        locale=LOCALE_GLOBAL,
    ),

    # =====================================================================
    # Dates
    # =====================================================================

    PatternDefinition(
        name="date_numeric",
        entity_type=EntityType.DATE,
        regex=rf"\b{_DAY}[./-](?:0?[1-9]|1[0-2])[./-](?:19|20)?\d{{2}}\b",
        score=DEFAULT_PATTERN_CONFIDENCE,
        locale=LOCALE_GLOBAL,
    ),
    PatternDefinition(
        # 12. März 2024, 1er janvier 2023, 5 maggio 24
        name="date_month_name",
        entity_type=EntityType.DATE,
        regex=rf"\b{_DAY}(?:\.|er)?[ \t]*(?i:{_MONTH_ALTERNATION})[ \t]+(?:(?:19|20)\d{{2}}|\d{{2}})\b",
        score=DEFAULT_PATTERN_CONFIDENCE,
        locale=LOCALE_GLOBAL,
    ),
]


def get_patterns(locales: list[str] | None = None) -> list[PatternDefinition]:
    """Return every pattern, or GLOBAL patterns plus those of *locales*."""
    if locales is None:
        return list(HIGH_RECALL_PATTERNS)
    wanted = {LOCALE_GLOBAL, *locales}
    return [p for p in HIGH_RECALL_PATTERNS if p.locale in wanted]

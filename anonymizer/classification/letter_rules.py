"""Letter-specific extraction rules.

Extracts the structural parts of a business letter that usually carry
personal data:

=================  ========  ====================================================
entity type        base      span
=================  ========  ====================================================
SALUTATION_NAME    0.85      the name after the salutation ("Müller")
RECIPIENT          0.80      the address block after "An:", "À:", "To:", ...
SIGNATURE          0.90      the name line after the closing formula
LETTER_DATE        0.85/0.7  the first date in the header / elsewhere
REFERENCE_LINE     0.75      the content after "Betreff:", "Objet:", "Re:", ...
=================  ========  ====================================================

Position boosts and the merge with existing entities are applied by the
``RuleEngine``; this module only extracts.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

from anonymizer.pii.entities import DetectionSource, Entity, EntityType
from anonymizer.validators.locale_data import MONTH_NAMES

_UPPER = "A-ZÀ-ÖØ-Þ"
_LOWER = "a-zß-öø-ÿ"
# One to four capitalised words; hyphenated and apostrophe names allowed.
_NAME = rf"[{_UPPER}][{_LOWER}'’]+(?:-[{_UPPER}][{_LOWER}'’]+)*(?:[ \t]+[{_UPPER}][{_LOWER}'’]+(?:-[{_UPPER}][{_LOWER}'’]+)*){{0,3}}"
_TITLE = r"(?:(?:Dr|Prof|Dott|Ing|lic|med|iur)\.?[ \t]+)*"

SALUTATION_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "de": (
        re.compile(rf"\b(?i:sehr[ \t]+geehrte[r]?)[ \t]+(?:Herr|Frau)[ \t]+{_TITLE}(?P<name>{_NAME})"),
        re.compile(rf"\b(?i:liebe[r]?)[ \t]+(?:(?:Herr|Frau)[ \t]+)?{_TITLE}(?P<name>{_NAME})"),
    ),
    "fr": (
        re.compile(rf"\b(?:Cher|Chère)[ \t]+(?:Monsieur|Madame|M\.|Mme)[ \t]+{_TITLE}(?P<name>{_NAME})"),
        re.compile(rf"^(?:Monsieur|Madame)[ \t]+{_TITLE}(?P<name>{_NAME})[ \t]*,", re.MULTILINE),
    ),
    "it": (
        re.compile(rf"\b(?:Gentile|Egregio|Egregia)[ \t]+(?:Signor|Signora|Sig\.ra|Sig\.|Dott\.ssa|Dott\.)[ \t]+{_TITLE}(?P<name>{_NAME})"),
        re.compile(rf"\b(?:Caro|Cara)[ \t]+(?P<name>{_NAME})"),
    ),
    "en": (
        re.compile(rf"\bDear[ \t]+(?:(?:Mr|Mrs|Ms|Miss|Dr|Prof)\.?[ \t]+)?(?P<name>{_NAME})"),
    ),
}

# Words that follow a salutation without being a name.
_GENERIC_SALUTATION_WORDS: frozenset[str] = frozenset({
    "madame", "monsieur", "sir", "madam", "sirs", "damen", "herren", "kunde", "kundin",
    "customer", "client", "cliente", "colleague", "colleagues", "team", "all",
    "grüsse", "grüße", "gruesse", "kollegen", "kolleginnen", "freunde", "amici",
})

_CLOSINGS = (
    r"mit[ \t]+freundlichen[ \t]+gr(?:ü|ue)(?:ß|ss)en|freundliche[ \t]+gr(?:ü|ue)(?:ß|ss)e|"
    r"beste[ \t]+gr(?:ü|ue)(?:ß|ss)e|hochachtungsvoll|"
    r"meilleures[ \t]+salutations|salutations[ \t]+distinguées|cordialement|bien[ \t]+à[ \t]+vous|"
    r"cordiali[ \t]+saluti|distinti[ \t]+saluti|cordialmente|"
    r"yours[ \t]+sincerely|yours[ \t]+faithfully|sincerely|kind[ \t]+regards|best[ \t]+regards|regards"
)
SIGNATURE_PATTERN = re.compile(
    rf"(?i:{_CLOSINGS})[ \t]*,?[ \t]*\n(?:[ \t]*\n)*[ \t]*{_TITLE}(?P<name>{_NAME})[ \t]*$",
    re.MULTILINE,
)

RECIPIENT_PATTERN = re.compile(
    r"^(?i:an|à|a|to|attn\.?|attention|z\.[ \t]?hd\.?|destinataire|destinatario)"
    r"(?::[ \t]*\n?|[ \t]*\n)"
    r"(?P<block>(?:[^\n]+\n?){1,5})",
    re.MULTILINE,
)
MIN_RECIPIENT_BLOCK_LENGTH = 10

REFERENCE_PATTERN = re.compile(
    r"^(?i:re|ref|betreff|betr\.?|objet|concerne|oggetto|subject)[ \t]*:[ \t]*(?P<content>[^\n]{5,100}?)[ \t]*$",
    re.MULTILINE,
)

_MONTHS = "|".join(re.escape(m) for m in sorted(MONTH_NAMES, key=len, reverse=True))
DATE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(rf"\b(?i:{_MONTHS})\.?[ \t]+\d{{1,2}},?[ \t]+\d{{4}}\b"),
    re.compile(rf"\b\d{{1,2}}(?:\.|er)?[ \t]+(?i:{_MONTHS})[ \t]+\d{{4}}\b"),
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    re.compile(r"\b\d{1,2}[./]\d{1,2}[./]\d{4}\b"),
)

SALUTATION_CONFIDENCE = 0.85
RECIPIENT_CONFIDENCE = 0.80
SIGNATURE_CONFIDENCE = 0.90
HEADER_DATE_CONFIDENCE = 0.85
BODY_DATE_CONFIDENCE = 0.70
REFERENCE_CONFIDENCE = 0.75

RULE_NAMES: tuple[str, ...] = ("salutation", "recipient_block", "signature", "letter_date", "reference_line")


@dataclass(frozen=True)
class _Span:
    start: int
    end: int


def _trimmed(text: str, start: int, end: int) -> _Span | None:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return _Span(start, end) if start < end else None


def _rule_entity(
    text: str,
    span: _Span,
    entity_type: EntityType,
    confidence: float,
    rule: str,
    **metadata: object,
) -> Entity:
    return Entity(
        type=entity_type,
        start=span.start,
        end=span.end,
        text=text[span.start:span.end],
        confidence=confidence,
        source=DetectionSource.RULE,
        metadata={"rule": rule, **metadata},
    )


class LetterRules:
    """Stateless; ``header_ratio`` only decides the letter-date confidence."""

    def __init__(self, header_ratio: float = 0.2) -> None:
        self.header_ratio = header_ratio

    def extract(self, text: str, language: str | None = None) -> list[Entity]:
        entities: list[Entity] = []
        entities.extend(self.extract_salutation_names(text, language))
        entities.extend(self.extract_recipient_block(text))
        entities.extend(self.extract_signature(text))
        entities.extend(self.extract_letter_date(text))
        entities.extend(self.extract_reference_line(text))
        entities.sort(key=lambda e: (e.start, e.end))
        return entities

    def extract_salutation_names(self, text: str, language: str | None = None) -> list[Entity]:
        # Detected language first, then the others: Swiss letters mix languages.
        order = [language] if language in SALUTATION_PATTERNS else []
        order += [lang for lang in SALUTATION_PATTERNS if lang not in order]

        entities: list[Entity] = []
        seen: set[tuple[int, int]] = set()
        for lang in order:
            for pattern in SALUTATION_PATTERNS[lang]:
                for match in pattern.finditer(text):
                    name = match.group("name")
                    if len(name) < 2 or name.split()[0].lower() in _GENERIC_SALUTATION_WORDS:
                        continue
                    span = _Span(match.start("name"), match.end("name"))
                    if (span.start, span.end) in seen:
                        continue
                    seen.add((span.start, span.end))
                    entities.append(_rule_entity(
                        text, span, EntityType.SALUTATION_NAME, SALUTATION_CONFIDENCE,
                        "salutation", language=lang,
                    ))
        return entities

    def extract_recipient_block(self, text: str) -> list[Entity]:
        entities = []
        for match in RECIPIENT_PATTERN.finditer(text):
            span = _trimmed(text, match.start("block"), match.end("block"))
            if span is None or span.end - span.start < MIN_RECIPIENT_BLOCK_LENGTH:
                continue
            entities.append(_rule_entity(
                text, span, EntityType.RECIPIENT, RECIPIENT_CONFIDENCE, "recipient_block",
            ))
        return entities

    def extract_signature(self, text: str) -> list[Entity]:
        entities = []
        for match in SIGNATURE_PATTERN.finditer(text):
            span = _Span(match.start("name"), match.end("name"))
            entities.append(_rule_entity(
                text, span, EntityType.SIGNATURE, SIGNATURE_CONFIDENCE, "signature",
            ))
        return entities

    def extract_letter_date(self, text: str) -> list[Entity]:
        """The first date in the header, or else the first date anywhere."""
        matches: list[_Span] = []
        for pattern in DATE_PATTERNS:
            matches.extend(_Span(m.start(), m.end()) for m in pattern.finditer(text))
        if not matches:
            return []

        first = min(matches, key=lambda s: (s.start, -s.end))
        in_header = first.start < len(text) * self.header_ratio
        confidence = HEADER_DATE_CONFIDENCE if in_header else BODY_DATE_CONFIDENCE
        return [_rule_entity(
            text, first, EntityType.LETTER_DATE, confidence, "letter_date", in_header=in_header,
        )]

    def extract_reference_line(self, text: str) -> list[Entity]:
        entities = []
        for match in REFERENCE_PATTERN.finditer(text):
            span = _Span(match.start("content"), match.end("content"))
            entities.append(_rule_entity(
                text, span, EntityType.REFERENCE_LINE, REFERENCE_CONFIDENCE, "reference_line",
            ))
        return entities

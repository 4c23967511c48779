"""Context scorer: adjust candidate confidence from surrounding evidence.

Four factors, each either present or absent:

================  ======  ==================================================
factor            weight  fires when
================  ======  ==================================================
keyword           0.40    a label word for the type appears in the
                          ``window`` characters before the entity
related           0.30    a related entity with confidence >= 0.7 lies
                          within ``proximity`` characters
position          0.20    the type is expected in headers/footers and the
                          entity starts in one
repetition        0.10    the same text is detected again with the same type
================  ======  ==================================================

``context_score = matched weight / total weight`` and::

    new = min(1.0, conf * (0.7 + 0.6 * context_score))
    new = max(new, min(type_floor, conf))

so strong context raises confidence by up to 30%, no context lowers it by
up to 30%, and nothing drops below the type's floor (or below the original
confidence when that was already under the floor).

``score`` is pure.  ``apply`` computes every score from the confidences as
they were on entry before writing any back, so the result does not depend
on entity order.
"""
from __future__ import annotations

import logging
import re

from anonymizer.pii.entities import Entity, EntityType

logger = logging.getLogger(__name__)

DEFAULT_WINDOW: int = 50
DEFAULT_PROXIMITY: int = 100
RELATED_MIN_CONFIDENCE: float = 0.7
DEFAULT_FLOOR: float = 0.3

FACTOR_WEIGHTS: dict[str, float] = {
    "keyword": 0.40,
    "related": 0.30,
    "position": 0.20,
    "repetition": 0.10,
}

TYPE_FLOORS: dict[EntityType, float] = {
    EntityType.SWISS_AVS: 0.5,
    EntityType.IBAN: 0.5,
    EntityType.EMAIL: 0.5,
    EntityType.VAT_NUMBER: 0.45,
    EntityType.PHONE: 0.4,
    EntityType.PAYMENT_REF: 0.4,
    EntityType.SWISS_ADDRESS: 0.35,
    EntityType.EU_ADDRESS: 0.35,
    EntityType.ADDRESS: 0.35,
}

_ADDRESS_WORDS = (
    "adresse", "address", "indirizzo", "wohnhaft", "wohnort", "domicile",
    "domicilio", "domicilié", "domiciliato", "anschrift", "sitz", "siège", "sede",
)

CONTEXT_KEYWORDS: dict[EntityType, tuple[str, ...]] = {
    EntityType.PHONE: (
        "tel", "tel.", "telefon", "téléphone", "telefono", "phone", "mobile", "mobil",
        "natel", "handy", "portable", "cellulare", "fax",
    ),
    EntityType.EMAIL: ("e-mail", "email", "mail", "courriel", "posta elettronica"),
    EntityType.IBAN: (
        "iban", "konto", "kontonummer", "compte", "conto", "account", "bank", "banque",
        "banca", "bic", "swift", "zahlbar an", "payable à",
    ),
    EntityType.SWISS_AVS: (
        "avs", "ahv", "avs-nr", "ahv-nr", "ahv-nummer", "numéro avs", "numero avs",
        "sozialversicherungsnummer", "social security", "versichertennummer", "nss",
    ),
    EntityType.VAT_NUMBER: ("mwst", "mwst-nr", "tva", "iva", "uid", "vat", "ust-idnr", "ust-id", "che"),
    EntityType.DATE: (
        "datum", "date", "data", "geboren", "geburtsdatum", "né", "née", "nato", "nata",
        "born", "date de naissance", "data di nascita", "vom", "du", "del", "le", "am",
    ),
    EntityType.PERSON: (
        "herr", "herrn", "frau", "monsieur", "madame", "mme", "m.", "signor", "signora",
        "sig.", "mr", "mr.", "mrs", "mrs.", "ms", "dr", "dr.", "prof", "name", "nom",
        "nome", "patient", "patientin", "client", "kunde", "mandant",
    ),
    EntityType.ORGANIZATION: (
        "firma", "société", "societa", "società", "company", "entreprise", "arbeitgeber",
        "employeur", "employer", "datore di lavoro",
    ),
    EntityType.LOCATION: _ADDRESS_WORDS,
    EntityType.ADDRESS: _ADDRESS_WORDS,
    EntityType.SWISS_ADDRESS: _ADDRESS_WORDS,
    EntityType.EU_ADDRESS: _ADDRESS_WORDS,
    EntityType.PAYMENT_REF: (
        "referenz", "référence", "riferimento", "reference", "zahlungsreferenz",
        "référence de paiement", "ref", "ref.",
    ),
}

_CONTACT_TYPES = frozenset({
    EntityType.PERSON,
    EntityType.ORGANIZATION,
    EntityType.EMAIL,
    EntityType.PHONE,
    EntityType.ADDRESS,
    EntityType.SWISS_ADDRESS,
    EntityType.EU_ADDRESS,
})

RELATED_TYPES: dict[EntityType, frozenset[EntityType]] = {
    EntityType.PERSON: _CONTACT_TYPES | {EntityType.SWISS_AVS, EntityType.DATE, EntityType.IBAN},
    EntityType.ORGANIZATION: _CONTACT_TYPES | {EntityType.VAT_NUMBER, EntityType.IBAN},
    EntityType.EMAIL: _CONTACT_TYPES,
    EntityType.PHONE: _CONTACT_TYPES,
    EntityType.ADDRESS: _CONTACT_TYPES,
    EntityType.SWISS_ADDRESS: _CONTACT_TYPES,
    EntityType.EU_ADDRESS: _CONTACT_TYPES,
    EntityType.LOCATION: _CONTACT_TYPES,
    EntityType.IBAN: frozenset({EntityType.PERSON, EntityType.ORGANIZATION, EntityType.PAYMENT_REF}),
    EntityType.PAYMENT_REF: frozenset({EntityType.IBAN, EntityType.ORGANIZATION}),
    EntityType.SWISS_AVS: frozenset({EntityType.PERSON, EntityType.DATE}),
    EntityType.VAT_NUMBER: frozenset({EntityType.ORGANIZATION, EntityType.ADDRESS, EntityType.SWISS_ADDRESS}),
    EntityType.DATE: frozenset({EntityType.PERSON, EntityType.SWISS_AVS}),
}

# Types that letterheads and signature blocks usually carry.
POSITION_TYPES: frozenset[EntityType] = _CONTACT_TYPES | {
    EntityType.DATE,
    EntityType.VAT_NUMBER,
    EntityType.IBAN,
    EntityType.LOCATION,
}


def _keyword_regex(words: tuple[str, ...]) -> re.Pattern[str]:
    alternation = "|".join(re.escape(w) for w in sorted(words, key=len, reverse=True))
    return re.compile(rf"(?<!\w)(?:{alternation})(?!\w)", re.IGNORECASE)


_KEYWORD_RES: dict[EntityType, re.Pattern[str]] = {
    entity_type: _keyword_regex(words) for entity_type, words in CONTEXT_KEYWORDS.items()
}


class ContextScorer:
    def __init__(
        self,
        window: int = DEFAULT_WINDOW,
        *,
        proximity: int = DEFAULT_PROXIMITY,
        header_ratio: float = 0.2,
        footer_ratio: float = 0.3,
    ) -> None:
        if window < 0 or proximity < 0:
            raise ValueError("window and proximity must be non-negative")
        if not 0.0 <= header_ratio <= 1.0 or not 0.0 <= footer_ratio <= 1.0:
            raise ValueError("header_ratio and footer_ratio must be in [0, 1]")
        self.window = window
        self.proximity = proximity
        self.header_ratio = header_ratio
        self.footer_ratio = footer_ratio

    # ------------------------------------------------------------------
    # Factors
    # ------------------------------------------------------------------

    def _has_keyword(self, entity: Entity, text: str) -> bool:
        regex = _KEYWORD_RES.get(entity.type)
        if regex is None:
            return False
        before = text[max(0, entity.start - self.window):entity.start]
        return regex.search(before) is not None

    def _has_related(self, entity: Entity, others: list[Entity]) -> bool:
        related = RELATED_TYPES.get(entity.type)
        if not related:
            return False
        for other in others:
            if other.id == entity.id or other.overlaps(entity):
                continue
            if other.type not in related or other.confidence < RELATED_MIN_CONFIDENCE:
                continue
            gap = max(other.start - entity.end, entity.start - other.end)
            if gap <= self.proximity:
                return True
        return False

    def _in_header_or_footer(self, entity: Entity, text: str) -> bool:
        if entity.type not in POSITION_TYPES or not text:
            return False
        length = len(text)
        return entity.start < length * self.header_ratio or entity.start >= length * (1 - self.footer_ratio)

    @staticmethod
    def _is_repeated(entity: Entity, others: list[Entity]) -> bool:
        needle = entity.text.strip().lower()
        return any(
            other.id != entity.id and other.type == entity.type and other.text.strip().lower() == needle
            for other in others
        )

    def factors(self, entity: Entity, full_text: str, other_entities: list[Entity]) -> list[str]:
        """Names of the factors that fire for *entity*, in weight order."""
        fired = []
        if self._has_keyword(entity, full_text):
            fired.append("keyword")
        if self._has_related(entity, other_entities):
            fired.append("related")
        if self._in_header_or_footer(entity, full_text):
            fired.append("position")
        if self._is_repeated(entity, other_entities):
            fired.append("repetition")
        return fired

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    @staticmethod
    def _adjust(entity: Entity, fired: list[str]) -> float:
        context_score = sum(FACTOR_WEIGHTS[name] for name in fired) / sum(FACTOR_WEIGHTS.values())
        conf = entity.confidence
        adjusted = min(1.0, conf * (0.7 + 0.6 * context_score))
        floor = min(TYPE_FLOORS.get(entity.type, DEFAULT_FLOOR), conf)
        return max(adjusted, floor)

    def score(self, entity: Entity, full_text: str, other_entities: list[Entity]) -> float:
        """Return the context-adjusted confidence of *entity*; mutates nothing."""
        return self._adjust(entity, self.factors(entity, full_text, other_entities))

    def apply(self, entities: list[Entity], full_text: str) -> list[Entity]:
        """Score every entity against the unmodified set, then write back."""
        updates = []
        for entity in entities:
            fired = self.factors(entity, full_text, entities)
            updates.append((entity, self._adjust(entity, fired), fired))

        for entity, new_confidence, fired in updates:
            entity.metadata["context_factors"] = fired
            entity.set_confidence(new_confidence)

        logger.debug("context_scorer: entities=%d", len(entities))
        return entities

"""Address scorer: one confidence per linked address.

Five additive terms, each capped at its own maximum:

=============  ====  ======================================================
term           max   contribution
=============  ====  ======================================================
completeness   1.0   0.2 per distinct component type (at most 5 types)
pattern        0.3   0.3 primary/international, 0.24 alternate,
                     0.15 partial, 0 none
postal         0.2   0.2 listed in the reference table, 0.16 well-formed
                     Swiss code, 0.14 plausible DE/FR/IT/AT code,
                     0.06 anything else
city           0.1   0.1 in the gazetteer, 0.05 right after a recognised
                     postal code, 0.03 anything else
country        0.1   0.1 explicit country token, 0.05 ``CH-`` prefix on the
                     postal code
=============  ====  ======================================================

``confidence = sum / 1.7`` where 1.7 is the largest attainable sum, so the
result lies in [0, 1] and rises whenever any single term rises.  A full
Swiss address without a country token scores 1.4 / 1.7 = 0.82 in the
primary order and 1.34 / 1.7 = 0.79 in the alternate order.

Below ``review_threshold`` the address is flagged for review; at or above
``auto_threshold`` it is marked for automatic anonymization.
"""
from __future__ import annotations

import logging
from typing import Any

from anonymizer.address.postal_data import (
    has_swiss_prefix,
    is_known_city,
    is_known_postal_code,
    is_plausible_foreign_postal_code,
    is_valid_swiss_postal_code_format,
)
from anonymizer.pii.entities import AddressPattern, Entity, EntityType, GroupedAddress

logger = logging.getLogger(__name__)

DEFAULT_REVIEW_THRESHOLD: float = 0.6
DEFAULT_AUTO_THRESHOLD: float = 0.8

COMPLETENESS_PER_TYPE: float = 0.2
MAX_COMPONENT_TYPES: int = 5

PATTERN_SCORES: dict[AddressPattern, float] = {
    AddressPattern.PRIMARY: 0.3,
    AddressPattern.INTERNATIONAL: 0.3,
    AddressPattern.ALTERNATE: 0.24,
    AddressPattern.PARTIAL: 0.15,
    AddressPattern.NONE: 0.0,
}
POSTAL_REFERENCE: float = 0.2
POSTAL_SWISS_FORMAT: float = 0.16
POSTAL_FOREIGN_FORMAT: float = 0.14
POSTAL_UNVERIFIED: float = 0.06
CITY_GAZETTEER: float = 0.1
CITY_AFTER_POSTAL: float = 0.05
CITY_UNVERIFIED: float = 0.03
COUNTRY_EXPLICIT: float = 0.1
COUNTRY_IMPLIED: float = 0.05

MAX_SCORES: dict[str, float] = {
    "completeness": COMPLETENESS_PER_TYPE * MAX_COMPONENT_TYPES,
    "pattern": max(PATTERN_SCORES.values()),
    "postal": POSTAL_REFERENCE,
    "city": CITY_GAZETTEER,
    "country": COUNTRY_EXPLICIT,
}
MAX_TOTAL: float = sum(MAX_SCORES.values())


def _factor(name: str, score: float, matched: bool, description: str) -> dict[str, Any]:
    return {
        "name": name,
        "score": score,
        "max_score": MAX_SCORES[name],
        "matched": matched,
        "description": description,
    }


def _first(address: GroupedAddress, entity_type: EntityType) -> Entity | None:
    return next((c for c in address.components if c.type == entity_type), None)


def _postal_tier(code: str) -> tuple[float, str]:
    if is_known_postal_code(code):
        return POSTAL_REFERENCE, "reference"
    if is_valid_swiss_postal_code_format(code):
        return POSTAL_SWISS_FORMAT, "swiss_format"
    if is_plausible_foreign_postal_code(code):
        return POSTAL_FOREIGN_FORMAT, "foreign_format"
    return POSTAL_UNVERIFIED, "unverified"


class AddressScorer:
    """Score grouped addresses in place.

    Parameters
    ----------
    review_threshold:
        Confidence below which an address is flagged for review.
    auto_threshold:
        Confidence at or above which an address is anonymized automatically.
    """

    def __init__(
        self,
        review_threshold: float = DEFAULT_REVIEW_THRESHOLD,
        auto_threshold: float = DEFAULT_AUTO_THRESHOLD,
    ) -> None:
        if not 0.0 <= review_threshold <= auto_threshold <= 1.0:
            raise ValueError("thresholds must satisfy 0 <= review_threshold <= auto_threshold <= 1")
        self.review_threshold = review_threshold
        self.auto_threshold = auto_threshold

    # ------------------------------------------------------------------
    # Terms
    # ------------------------------------------------------------------

    @staticmethod
    def score_completeness(address: GroupedAddress) -> dict[str, Any]:
        count = min(len(address.component_types()), MAX_COMPONENT_TYPES)
        return _factor(
            "completeness",
            count * COMPLETENESS_PER_TYPE,
            count >= 4,
            f"{count} distinct component types",
        )

    @staticmethod
    def score_pattern(address: GroupedAddress) -> dict[str, Any]:
        score = PATTERN_SCORES[address.pattern]
        return _factor("pattern", score, score > 0, f"pattern {address.pattern}")

    @staticmethod
    def score_postal(address: GroupedAddress) -> dict[str, Any]:
        postal = _first(address, EntityType.POSTAL_CODE)
        if postal is None:
            return _factor("postal", 0.0, False, "no postal code")
        score, tier = _postal_tier(postal.text)
        return _factor("postal", score, tier != "unverified", f"postal code {tier}")

    @staticmethod
    def score_city(address: GroupedAddress) -> dict[str, Any]:
        city = _first(address, EntityType.CITY)
        if city is None:
            return _factor("city", 0.0, False, "no city")
        if is_known_city(city.text):
            return _factor("city", CITY_GAZETTEER, True, "city in gazetteer")

        postal = _first(address, EntityType.POSTAL_CODE)
        if postal is not None and postal.end <= city.start:
            between = address.text[postal.end - address.start:city.start - address.start]
            recognised = _postal_tier(postal.text)[1] != "unverified"
            if recognised and between.strip(" \t,") == "":
                return _factor("city", CITY_AFTER_POSTAL, False, "city after postal code")
        return _factor("city", CITY_UNVERIFIED, False, "city unverified")

    @staticmethod
    def score_country(address: GroupedAddress) -> dict[str, Any]:
        if _first(address, EntityType.COUNTRY) is not None:
            return _factor("country", COUNTRY_EXPLICIT, True, "explicit country")
        postal = _first(address, EntityType.POSTAL_CODE)
        if postal is not None and has_swiss_prefix(postal.text):
            return _factor("country", COUNTRY_IMPLIED, True, "country implied by postal prefix")
        return _factor("country", 0.0, False, "no country")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def score(self, address: GroupedAddress) -> GroupedAddress:
        """Write confidence, factors and both decision flags onto *address*."""
        factors = [
            self.score_completeness(address),
            self.score_pattern(address),
            self.score_postal(address),
            self.score_city(address),
            self.score_country(address),
        ]
        total = sum(min(f["score"], f["max_score"]) for f in factors)
        address.set_confidence(total / MAX_TOTAL)
        address.scoring_factors = factors
        address.flagged_for_review = address.confidence < self.review_threshold
        address.auto_anonymize = address.confidence >= self.auto_threshold
        address.metadata["address_score"] = round(address.confidence, 4)

        # SAFETY: log only metadata
        logger.debug(
            "address_scorer: pattern=%s components=%d confidence=%.3f review=%s auto=%s",
            address.pattern,
            len(address.components),
            address.confidence,
            address.flagged_for_review,
            address.auto_anonymize,
        )
        return address

    def score_all(self, addresses: list[GroupedAddress]) -> list[GroupedAddress]:
        return [self.score(address) for address in addresses]

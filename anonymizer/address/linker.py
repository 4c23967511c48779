"""Address linker: group nearby components into composite addresses.

Grouping
--------
Components are sorted by position and a new group starts whenever the gap
since the previous component's end exceeds ``threshold`` characters (50).
Across a line break the allowed gap widens to ``newline_threshold`` (100),
so multi-line address blocks stay together.  Groups with fewer than
``min_components`` components are discarded.

Templates
---------
=============  ============================================================
pattern        field order
=============  ============================================================
PRIMARY        street + number, postal + city
INTERNATIONAL  street + number, postal + city, country
ALTERNATE      postal + city, street + number (letterhead style)
PARTIAL        a subset of one of the above in template order, with at
               least one street field and one locality field, or postal
               and city together
NONE           anything else
=============  ============================================================

``street + number`` also matches ``number + street`` (``12, rue du Lac``).

Ownership
---------
Every component of a materialised group is marked ``linked`` and appears
only inside its ``GroupedAddress``.  Candidate address entities from the
earlier passes that overlap a group's span are absorbed into it as well.
Groups whose pattern is NONE are not materialised.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from anonymizer.address.components import AddressComponentDetector, country_code
from anonymizer.address.postal_data import has_swiss_prefix, is_plausible_foreign_postal_code
from anonymizer.pii.entities import (
    AddressPattern,
    DetectionSource,
    Entity,
    EntityType,
    GroupedAddress,
    is_address_component,
)

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD: int = 50
DEFAULT_NEWLINE_THRESHOLD: int = 100
DEFAULT_MIN_COMPONENTS: int = 2

_NEWLINE_RE = re.compile(r"[\r\n]")

_STREET = (EntityType.STREET_NAME, EntityType.STREET_NUMBER)
_STREET_REVERSED = (EntityType.STREET_NUMBER, EntityType.STREET_NAME)
_LOCALITY = (EntityType.POSTAL_CODE, EntityType.CITY)
_COUNTRY = (EntityType.COUNTRY,)

TEMPLATES: dict[AddressPattern, tuple[tuple[EntityType, ...], ...]] = {
    AddressPattern.PRIMARY: (_STREET + _LOCALITY, _STREET_REVERSED + _LOCALITY),
    AddressPattern.INTERNATIONAL: (
        _STREET + _LOCALITY + _COUNTRY,
        _STREET_REVERSED + _LOCALITY + _COUNTRY,
    ),
    AddressPattern.ALTERNATE: (
        _LOCALITY + _STREET,
        _LOCALITY + _STREET_REVERSED,
        _LOCALITY + _STREET + _COUNTRY,
        _LOCALITY + _STREET_REVERSED + _COUNTRY,
    ),
}

# Candidate types a group absorbs when they overlap its span.
ABSORBED_TYPES: frozenset[EntityType] = frozenset({
    EntityType.ADDRESS,
    EntityType.SWISS_ADDRESS,
    EntityType.EU_ADDRESS,
    EntityType.LOCATION,
    EntityType.STREET_NAME,
    EntityType.STREET_NUMBER,
    EntityType.POSTAL_CODE,
    EntityType.CITY,
    EntityType.COUNTRY,
})

BREAKDOWN_FIELDS: dict[EntityType, str] = {
    EntityType.STREET_NAME: "street",
    EntityType.STREET_NUMBER: "number",
    EntityType.POSTAL_CODE: "postal",
    EntityType.CITY: "city",
    EntityType.COUNTRY: "country",
}

# Initial confidence before the scorer runs.
_PATTERN_CONFIDENCE: dict[AddressPattern, float] = {
    AddressPattern.PRIMARY: 0.85,
    AddressPattern.INTERNATIONAL: 0.85,
    AddressPattern.ALTERNATE: 0.75,
    AddressPattern.PARTIAL: 0.5,
    AddressPattern.NONE: 0.3,
}


@dataclass
class LinkResult:
    """Output of ``AddressLinker.link``.

    ``standalone`` holds the input entities that no group owns, in input
    order.  Detector components that end up in no group are dropped.
    """

    addresses: list[GroupedAddress] = field(default_factory=list)
    standalone: list[Entity] = field(default_factory=list)


def _field_order(group: list[Entity]) -> tuple[EntityType, ...]:
    """Component types in position order, consecutive repeats collapsed."""
    order: list[EntityType] = []
    for component in sorted(group, key=lambda c: c.start):
        if not order or order[-1] != component.type:
            order.append(component.type)
    return tuple(order)


def _is_subsequence(order: tuple[EntityType, ...], template: tuple[EntityType, ...]) -> bool:
    it = iter(template)
    return all(t in it for t in order)


def detect_pattern(group: list[Entity]) -> AddressPattern:
    """Match the group's field order against the address templates."""
    order = _field_order(group)
    if len(order) != len(set(order)):
        return AddressPattern.NONE

    for pattern, templates in TEMPLATES.items():
        if order in templates:
            return pattern

    types = set(order)
    has_street = bool(types & set(_STREET))
    has_locality = bool(types & set(_LOCALITY))
    partial_fields = (has_street and has_locality) or set(_LOCALITY) <= types
    if partial_fields and any(
        _is_subsequence(order, template) for templates in TEMPLATES.values() for template in templates
    ):
        return AddressPattern.PARTIAL
    return AddressPattern.NONE


def group_by_proximity(
    components: list[Entity],
    text: str,
    threshold: int = DEFAULT_THRESHOLD,
    newline_threshold: int = DEFAULT_NEWLINE_THRESHOLD,
    min_components: int = DEFAULT_MIN_COMPONENTS,
) -> list[list[Entity]]:
    """Split position-sorted components wherever the gap is too wide.

    Parameters
    ----------
    components:
        Address components; any order.
    text:
        The document text, used to see whether a gap crosses a line break.
    threshold:
        Largest gap (characters) within one line.
    newline_threshold:
        Largest gap when the text between two components contains a line
        break.
    """
    if not components:
        return []

    ordered = sorted(components, key=lambda c: (c.start, c.end))
    groups: list[list[Entity]] = []
    current = [ordered[0]]
    for previous, component in zip(ordered, ordered[1:]):
        gap = component.start - previous.end
        crosses_line = _NEWLINE_RE.search(text, previous.end, max(previous.end, component.start))
        limit = newline_threshold if crosses_line else threshold
        if 0 <= gap <= limit:
            current.append(component)
            continue
        if len(current) >= min_components:
            groups.append(current)
        current = [component]
    if len(current) >= min_components:
        groups.append(current)
    return groups


def _address_type(components: list[Entity]) -> EntityType:
    postal = next((c for c in components if c.type == EntityType.POSTAL_CODE), None)
    country = next((c for c in components if c.type == EntityType.COUNTRY), None)
    if postal is not None:
        if is_plausible_foreign_postal_code(postal.text):
            return EntityType.EU_ADDRESS
        return EntityType.SWISS_ADDRESS
    if country is not None:
        return EntityType.SWISS_ADDRESS if country_code(country.text) == "CH" else EntityType.EU_ADDRESS
    return EntityType.ADDRESS


def create_grouped_address(group: list[Entity], text: str) -> GroupedAddress:
    """Build the composite address owning *group*; marks every component linked."""
    components = sorted(group, key=lambda c: (c.start, c.end))
    start = components[0].start
    end = max(c.end for c in components)
    pattern = detect_pattern(components)

    breakdown: dict[str, str | None] = dict.fromkeys(BREAKDOWN_FIELDS.values())
    for component in components:
        key = BREAKDOWN_FIELDS[component.type]
        if breakdown[key] is None:
            breakdown[key] = component.text

    address = GroupedAddress(
        type=_address_type(components),
        start=start,
        end=end,
        text=text[start:end],
        confidence=_PATTERN_CONFIDENCE[pattern],
        source=DetectionSource.RULE,
        components=components,
        pattern=pattern,
        breakdown=breakdown,
        metadata={
            "pattern": str(pattern),
            "component_count": len(components),
            "swiss_prefix": any(
                c.type == EntityType.POSTAL_CODE and has_swiss_prefix(c.text) for c in components
            ),
        },
    )
    for component in components:
        component.linked = True
        component.metadata["group_id"] = address.id
    return address


class AddressLinker:
    """Detect components, group them, and hand ownership to the groups."""

    def __init__(
        self,
        detector: AddressComponentDetector | None = None,
        *,
        threshold: int = DEFAULT_THRESHOLD,
        newline_threshold: int = DEFAULT_NEWLINE_THRESHOLD,
        min_components: int = DEFAULT_MIN_COMPONENTS,
    ) -> None:
        if threshold < 0 or newline_threshold < threshold:
            raise ValueError("thresholds must satisfy 0 <= threshold <= newline_threshold")
        if min_components < 1:
            raise ValueError("min_components must be at least 1")
        self.detector = detector if detector is not None else AddressComponentDetector()
        self.threshold = threshold
        self.newline_threshold = newline_threshold
        self.min_components = min_components

    def _components(self, entities: list[Entity], text: str) -> list[Entity]:
        """Detector components plus upstream component entities that do not collide."""
        detected = self.detector.detect(text)
        for entity in entities:
            if is_address_component(entity) and not any(entity.overlaps(d) for d in detected):
                detected.append(entity)
        return detected

    def link(self, entities: list[Entity], text: str) -> LinkResult:
        """Group address components and remove owned entities from *entities*.

        Upstream entities are never mutated except for the ``linked`` flag on
        the ones a group absorbs.
        """
        components = self._components(entities, text)
        groups = group_by_proximity(
            components, text, self.threshold, self.newline_threshold, self.min_components,
        )

        addresses: list[GroupedAddress] = []
        owned: set[str] = set()
        for group in groups:
            if detect_pattern(group) == AddressPattern.NONE:
                continue
            address = create_grouped_address(group, text)
            owned.update(c.id for c in address.components)
            addresses.append(address)

        for entity in entities:
            if entity.id in owned or entity.type not in ABSORBED_TYPES:
                continue
            for address in addresses:
                if entity.overlaps(address):
                    entity.linked = True
                    entity.metadata["group_id"] = address.id
                    address.metadata.setdefault("absorbed", []).append(str(entity.type))
                    owned.add(entity.id)
                    break

        standalone = [e for e in entities if e.id not in owned]
        # SAFETY: log only metadata
        logger.debug(
            "address_linker: components=%d groups=%d addresses=%d absorbed=%d",
            len(components),
            len(groups),
            len(addresses),
            len(owned),
        )
        return LinkResult(addresses=addresses, standalone=standalone)

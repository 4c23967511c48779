"""Process-wide validator registry.

Exactly one validator instance per externally visible entity type, built
lazily on first access and frozen afterwards:

- ``get_all_validators()`` returns the immutable tuple of instances;
- ``get_validator_for_type()`` is an O(1) lookup in a read-only mapping.

``SwissPostalCodeValidator`` checks only a sub-component of a Swiss
address and shares the SWISS_ADDRESS type with ``SwissAddressValidator``;
it is not registered, so it can never shadow its owner.

``_reset_registry()`` exists for tests only.
"""
from __future__ import annotations

import logging
import threading
from types import MappingProxyType
from typing import Mapping

from anonymizer.pii.entities import EntityType
from anonymizer.validators.base import Validator
from anonymizer.validators.date import DateValidator
from anonymizer.validators.email import EmailValidator
from anonymizer.validators.iban import IbanValidator
from anonymizer.validators.phone import PhoneValidator
from anonymizer.validators.swiss_address import SwissAddressValidator
from anonymizer.validators.swiss_avs import SwissAvsValidator
from anonymizer.validators.vat_number import VatNumberValidator

logger = logging.getLogger(__name__)

_REGISTERED_CLASSES: tuple[type[Validator], ...] = (
    IbanValidator,
    SwissAvsValidator,
    EmailValidator,
    PhoneValidator,
    DateValidator,
    VatNumberValidator,
    SwissAddressValidator,
)

_validators: tuple[Validator, ...] | None = None
_validator_map: Mapping[EntityType, Validator] | None = None
_lock = threading.Lock()


def _build() -> tuple[tuple[Validator, ...], Mapping[EntityType, Validator]]:
    instances = tuple(cls() for cls in _REGISTERED_CLASSES)
    by_type: dict[EntityType, Validator] = {}
    for validator in instances:
        if validator.entity_type in by_type:
            raise ValueError(
                f"duplicate validator for {validator.entity_type}: "
                f"{by_type[validator.entity_type].name} and {validator.name}"
            )
        by_type[validator.entity_type] = validator
    logger.debug("validator registry built: validators=%d", len(instances))
    return instances, MappingProxyType(by_type)


def _ensure_built() -> tuple[tuple[Validator, ...], Mapping[EntityType, Validator]]:
    global _validators, _validator_map
    if _validators is None or _validator_map is None:
        with _lock:
            if _validators is None or _validator_map is None:
                _validators, _validator_map = _build()
    return _validators, _validator_map


def get_all_validators() -> tuple[Validator, ...]:
    return _ensure_built()[0]


def get_validator_for_type(entity_type: EntityType | str) -> Validator | None:
    """Return the validator registered for *entity_type*, or None."""
    try:
        key = EntityType(entity_type)
    except ValueError:
        return None
    return _ensure_built()[1].get(key)


def get_validator_map() -> Mapping[EntityType, Validator]:
    return _ensure_built()[1]


def _reset_registry() -> None:
    """Forget the built registry.  Test hook only."""
    global _validators, _validator_map
    with _lock:
        _validators = None
        _validator_map = None

"""Format-validation pass: run each candidate through its type's validator.

Candidates whose type has no registered validator stay UNVERIFIED with
their confidence untouched.  Otherwise:

- valid   -> VALID,   confidence raised to at least the validator's level
- invalid -> INVALID, confidence lowered to at most the validator's level

The entity's document offset is passed to the validator so no validator
has to search the document for it.
"""
from __future__ import annotations

import logging

from anonymizer.pii.entities import Entity, ValidationStatus
from anonymizer.validators.registry import get_validator_for_type

logger = logging.getLogger(__name__)


class FormatValidationPass:
    def apply(self, entities: list[Entity], text: str) -> list[Entity]:
        valid = invalid = 0
        for entity in entities:
            validator = get_validator_for_type(entity.type)
            if validator is None:
                continue
            result = validator.validate(entity.text, context=text, offset=entity.start)
            entity.metadata["validator"] = validator.name
            entity.metadata["validation_reason"] = result.reason
            if result.is_valid:
                entity.validation = ValidationStatus.VALID
                entity.set_confidence(max(entity.confidence, result.confidence))
                valid += 1
            else:
                entity.validation = ValidationStatus.INVALID
                entity.set_confidence(min(entity.confidence, result.confidence))
                invalid += 1

        logger.debug("format_validation: entities=%d valid=%d invalid=%d", len(entities), valid, invalid)
        return entities

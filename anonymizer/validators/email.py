"""Email address validator."""
from __future__ import annotations

import re

from anonymizer.pii.entities import EntityType
from anonymizer.validators.base import Confidence, ValidationResult, Validator

_EMAIL_RE = re.compile(
    r"[a-z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?"
    r"(?:\.[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?)+"
)


class EmailValidator(Validator):
    entity_type = EntityType.EMAIL
    name = "EmailValidator"
    # RFC 5321 forward-path limit.
    max_length = 254

    def _validate(self, text, *, context=None, offset=None) -> ValidationResult:
        email = text.strip().lower()

        if not _EMAIL_RE.fullmatch(email):
            return ValidationResult(False, Confidence.FAILED, "Does not match email format")

        if ".." in email:
            return ValidationResult(False, Confidence.FAILED, "Contains consecutive dots")

        tld = email.rsplit(".", 1)[-1]
        if len(tld) < 2:
            return ValidationResult(False, Confidence.INVALID_FORMAT, "Invalid TLD")

        return ValidationResult(True, Confidence.FORMAT_VALID)


def validate_email(text: str) -> bool:
    return EmailValidator().validate(text).is_valid


def validate_email_full(text: str) -> ValidationResult:
    return EmailValidator().validate(text)

"""Pre-inference input checks for the statistical model.

A chunk that fails validation skips only its model call; pattern detection
over the same text is unaffected.

Safety rule: the text itself is never logged, only lengths.
"""
from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

MAX_MODEL_INPUT_LENGTH: int = 100_000
MIN_MODEL_INPUT_LENGTH: int = 1

_REPLACEMENT_CHAR = "�"
# C0 controls except tab, newline and carriage return, plus DEL.
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


@dataclass
class ModelInputValidation:
    valid: bool
    text: str = ""
    error: str | None = None
    warnings: list[str] = field(default_factory=list)


def validate_model_input(text: object) -> ModelInputValidation:
    """Check that *text* can be safely handed to the NER model.

    Returns
    -------
    ModelInputValidation
        ``valid=False`` with an ``error`` when the input is not a string, is
        empty after trimming, or exceeds ``MAX_MODEL_INPUT_LENGTH``.
        Otherwise ``text`` holds the trimmed, NFC-normalised string.  Lone
        replacement characters and control characters produce warnings but
        do not reject the input.
    """
    if not isinstance(text, str):
        return ModelInputValidation(valid=False, error=f"expected str, got {type(text).__name__}")

    if len(text) > MAX_MODEL_INPUT_LENGTH:
        return ModelInputValidation(
            valid=False,
            error=f"input exceeds maximum length ({MAX_MODEL_INPUT_LENGTH} characters)",
        )

    trimmed = text.strip()
    if len(trimmed) < MIN_MODEL_INPUT_LENGTH:
        return ModelInputValidation(valid=False, error="input is empty after trimming")

    warnings: list[str] = []
    if _REPLACEMENT_CHAR in trimmed:
        warnings.append("input contains U+FFFD replacement characters (possible encoding damage)")
    if _CONTROL_CHARS_RE.search(trimmed):
        warnings.append("input contains control characters")

    normalised = unicodedata.normalize("NFC", trimmed)
    if warnings:
        logger.debug("input_validator: length=%d warnings=%d", len(normalised), len(warnings))
    return ModelInputValidation(valid=True, text=normalised, warnings=warnings)

"""Pipeline input: plain text plus optional ingestion metadata."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DocumentInput:
    """Text handed over by the (external) ingestion step.

    Offsets of every detected entity refer to ``text`` exactly as given
    here; the pipeline never renormalises it.  ``filename`` and
    ``source_format`` are carried for the caller's benefit and never
    logged.
    """

    text: str
    filename: str | None = None
    source_format: str | None = None
    language_hint: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.text, str):
            raise ValueError(f"text must be a str; got {type(self.text).__name__}")

    @classmethod
    def coerce(cls, value: str | DocumentInput) -> DocumentInput:
        return value if isinstance(value, DocumentInput) else cls(text=value)

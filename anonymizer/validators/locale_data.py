"""Shared, immutable locale tables.

Month names for every supported language live here and nowhere else.
Each language maps lower-case month names (including common ASCII
spellings of accented names) to month numbers 1-12.
"""
from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

SUPPORTED_LANGUAGES: tuple[str, ...] = ("en", "de", "fr", "it")

MONTH_NAME_TO_NUMBER: Mapping[str, Mapping[str, int]] = MappingProxyType({
    "en": MappingProxyType({
        "january": 1, "february": 2, "march": 3, "april": 4,
        "may": 5, "june": 6, "july": 7, "august": 8,
        "september": 9, "october": 10, "november": 11, "december": 12,
    }),
    "de": MappingProxyType({
        "januar": 1, "februar": 2, "märz": 3, "maerz": 3, "april": 4,
        "mai": 5, "juni": 6, "juli": 7, "august": 8,
        "september": 9, "oktober": 10, "november": 11, "dezember": 12,
    }),
    "fr": MappingProxyType({
        "janvier": 1, "février": 2, "fevrier": 2, "mars": 3, "avril": 4,
        "mai": 5, "juin": 6, "juillet": 7, "août": 8, "aout": 8,
        "septembre": 9, "octobre": 10, "novembre": 11,
        "décembre": 12, "decembre": 12,
    }),
    "it": MappingProxyType({
        "gennaio": 1, "febbraio": 2, "marzo": 3, "aprile": 4,
        "maggio": 5, "giugno": 6, "luglio": 7, "agosto": 8,
        "settembre": 9, "ottobre": 10, "novembre": 11, "dicembre": 12,
    }),
})

MONTH_NAMES: frozenset[str] = frozenset(
    name for table in MONTH_NAME_TO_NUMBER.values() for name in table
)


def is_month_name(word: str) -> bool:
    return word.strip().lower() in MONTH_NAMES


def get_month_number(word: str, language: str | None = None) -> int | None:
    """Return 1-12 for a month name, searching one language or all of them."""
    key = word.strip().lower().rstrip(".")
    if language is not None:
        table = MONTH_NAME_TO_NUMBER.get(language)
        return table.get(key) if table is not None else None
    for lang in SUPPORTED_LANGUAGES:
        number = MONTH_NAME_TO_NUMBER[lang].get(key)
        if number is not None:
            return number
    return None

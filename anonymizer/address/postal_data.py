"""Swiss postal reference data and the city gazetteer.

Backed by ``postal_codes.yaml`` next to this module.  The table is loaded
once on first use and is read-only afterwards, so concurrent runs can share
it.  Lookups accept the forms found in documents: ``"8001"``, ``"CH-8001"``,
``"CH 8001"``; city comparisons fold case and accents (``Zurich`` matches
``Zürich``).
"""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

import yaml

from anonymizer.validators.swiss_postal_code import SWISS_POSTAL_MAX, SWISS_POSTAL_MIN

POSTAL_DATA_PATH = Path(__file__).with_name("postal_codes.yaml")

_REQUIRED_FIELDS: frozenset[str] = frozenset({"version", "cantons", "postal_codes", "foreign_cities"})

_CH_PREFIX_RE = re.compile(r"^CH[-\s]?", re.IGNORECASE)
_SWISS_CODE_RE = re.compile(r"^\d{4}$")
_FOREIGN_CODE_RE = re.compile(r"^(?:(?:D|F|I)[-\s]?)?\d{5}$|^A[-\s]?\d{4}$", re.IGNORECASE)


@dataclass(frozen=True)
class PostalLookup:
    """Reference entry for one Swiss postal code.

    Attributes
    ----------
    code:         Four-digit code as printed.
    city:         Official locality name.
    canton:       Two-letter canton abbreviation.
    canton_name:  Canton name in its main official language.
    aliases:      Exonyms of the city (``Genf``, ``Geneva``, ...).
    """
    code: str
    city: str
    canton: str
    canton_name: str
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class _PostalData:
    codes: Mapping[str, PostalLookup]
    swiss_cities: frozenset[str]
    foreign_cities: frozenset[str]
    gazetteer: tuple[str, ...]


def clean_postal_code(code: str) -> str:
    """Strip a ``CH-`` prefix and all whitespace."""
    return re.sub(r"\s+", "", _CH_PREFIX_RE.sub("", code.strip()))


def normalize_city(name: str) -> str:
    """Lower-case, accent-folded form used for every city comparison."""
    folded = name.strip().lower().replace("ß", "ss")
    decomposed = unicodedata.normalize("NFKD", folded)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", stripped)


def has_swiss_prefix(code: str) -> bool:
    return _CH_PREFIX_RE.match(code.strip()) is not None


def is_valid_swiss_postal_code_format(code: str) -> bool:
    """Four digits within the range Swiss Post assigns."""
    cleaned = clean_postal_code(code)
    if not _SWISS_CODE_RE.match(cleaned):
        return False
    return SWISS_POSTAL_MIN <= int(cleaned) <= SWISS_POSTAL_MAX


def is_plausible_foreign_postal_code(code: str) -> bool:
    """Five-digit DE/FR/IT codes, optionally country-prefixed, or ``A-1234``."""
    text = code.strip()
    if has_swiss_prefix(text) or not _FOREIGN_CODE_RE.match(text):
        return False
    return re.sub(r"\D", "", text) != "00000"


def _load(path: Path) -> _PostalData:
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a YAML mapping, got {type(data).__name__}")
    missing = _REQUIRED_FIELDS - data.keys()
    if missing:
        raise ValueError(f"{path}: missing required fields: {sorted(missing)}")

    cantons = {str(k): str(v) for k, v in data["cantons"].items()}
    codes: dict[str, PostalLookup] = {}
    swiss_names: set[str] = set()
    for code, entry in data["postal_codes"].items():
        code = str(code)
        if not isinstance(entry, list) or len(entry) < 2:
            raise ValueError(f"{path}: postal code {code} needs at least [city, canton]")
        city, canton, *aliases = (str(part) for part in entry)
        if canton not in cantons:
            raise ValueError(f"{path}: postal code {code} names unknown canton {canton!r}")
        codes[code] = PostalLookup(code, city, canton, cantons[canton], tuple(aliases))
        swiss_names.update([city, *aliases])
        # "Biel/Bienne" also matches each half.
        swiss_names.update(part for part in city.split("/") if part)

    foreign_names = {str(name) for name in data["foreign_cities"] or []}
    return _PostalData(
        codes=MappingProxyType(codes),
        swiss_cities=frozenset(normalize_city(n) for n in swiss_names),
        foreign_cities=frozenset(normalize_city(n) for n in foreign_names),
        gazetteer=tuple(sorted(swiss_names | foreign_names, key=lambda n: (-len(n), n))),
    )


@lru_cache(maxsize=1)
def get_postal_data() -> _PostalData:
    return _load(POSTAL_DATA_PATH)


def lookup_postal_code(code: str) -> PostalLookup | None:
    """Return the reference entry for *code*, or None if it is not listed."""
    return get_postal_data().codes.get(clean_postal_code(code))


def is_known_postal_code(code: str) -> bool:
    return lookup_postal_code(code) is not None


def is_known_city(name: str) -> bool:
    """True for Swiss localities and the listed neighbouring-country cities."""
    normalized = normalize_city(name)
    data = get_postal_data()
    return normalized in data.swiss_cities or normalized in data.foreign_cities


def city_matches_postal_code(code: str, city: str) -> bool:
    entry = lookup_postal_code(code)
    if entry is None:
        return False
    normalized = normalize_city(city)
    names = [entry.city, *entry.city.split("/"), *entry.aliases]
    return any(normalize_city(name) == normalized for name in names)


def gazetteer_names() -> tuple[str, ...]:
    """Every city name as written in the reference data, longest first."""
    return get_postal_data().gazetteer

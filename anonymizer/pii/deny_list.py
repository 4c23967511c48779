"""Deny list of known false positives for the high-recall pass.

Loaded from ``deny_list.yaml`` next to this module (or any file with the
same shape).  Entries apply globally, per entity type, or per language.
Month names from the shared locale table are always denied as PERSON.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml

from anonymizer.pii.entities import EntityType
from anonymizer.validators.locale_data import MONTH_NAMES

DEFAULT_DENY_LIST_PATH = Path(__file__).with_name("deny_list.yaml")

_REQUIRED_FIELDS: frozenset[str] = frozenset({
    "version",
    "global",
    "by_entity_type",
    "by_language",
})


class _EntrySet:
    """Case-insensitive strings plus compiled regexes."""

    def __init__(self, entries: list[Any], source: str) -> None:
        self.strings: set[str] = set()
        self.regexes: list[re.Pattern[str]] = []
        for entry in entries or []:
            if isinstance(entry, str):
                self.strings.add(entry.lower())
            elif isinstance(entry, dict) and "regex" in entry:
                flags = re.IGNORECASE if entry.get("ignore_case") else 0
                self.regexes.append(re.compile(entry["regex"], flags))
            else:
                raise ValueError(f"{source}: unsupported deny-list entry {entry!r}")

    def matches(self, text: str) -> bool:
        if text.lower() in self.strings:
            return True
        return any(regex.search(text) for regex in self.regexes)


class DenyList:
    """Immutable after construction; safe to share between runs."""

    def __init__(self, data: dict[str, Any], source: str = "<dict>") -> None:
        missing = _REQUIRED_FIELDS - data.keys()
        if missing:
            raise ValueError(f"{source}: missing required fields: {sorted(missing)}")

        self._global = _EntrySet(data["global"], source)
        self._by_type: dict[str, _EntrySet] = {
            str(key): _EntrySet(entries, source)
            for key, entries in (data["by_entity_type"] or {}).items()
        }
        self._by_language: dict[str, _EntrySet] = {
            str(key): _EntrySet(entries, source)
            for key, entries in (data["by_language"] or {}).items()
        }

    @classmethod
    def load(cls, path: str | Path = DEFAULT_DENY_LIST_PATH) -> DenyList:
        """Load a deny list from a YAML file.

        Raises
        ------
        ValueError
            If the document is not a mapping or lacks a required field.
        """
        path = Path(path)
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a YAML mapping, got {type(data).__name__}")
        return cls(data, source=str(path))

    def is_denied(self, text: str, entity_type: EntityType | str, language: str | None = None) -> bool:
        stripped = text.strip()
        if not stripped:
            return True
        if self._global.matches(stripped):
            return True
        if str(entity_type) == EntityType.PERSON and stripped.lower().rstrip(".") in MONTH_NAMES:
            return True
        by_type = self._by_type.get(str(entity_type))
        if by_type is not None and by_type.matches(stripped):
            return True
        if language is not None:
            by_language = self._by_language.get(language)
            if by_language is not None and by_language.matches(stripped):
                return True
        return False

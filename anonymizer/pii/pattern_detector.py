"""Pattern detector: Presidio pattern recognisers for the high-recall pass.

Each ``PatternDefinition`` from ``patterns.py`` becomes one Presidio
``PatternRecognizer``.  Recognisers are called directly, without an
``AnalyzerEngine`` or NLP engine, so no spaCy model is needed for
deterministic detection.

Never log raw text values; only entity_type, pattern name and counts.
"""
from __future__ import annotations

import logging

from presidio_analyzer.pattern import Pattern
from presidio_analyzer.pattern_recognizer import PatternRecognizer

from anonymizer.pii.entities import DetectionSource, Entity
from anonymizer.pii.patterns import (
    MIN_MATCH_LENGTH,
    PATTERN_FLAGS,
    PatternDefinition,
    get_patterns,
)

logger = logging.getLogger(__name__)


class PatternDetector:
    """Run the high-recall pattern catalogue over plain text.

    Holds only compiled recognisers; one instance may be shared by
    sequential runs.
    """

    def __init__(self, locales: list[str] | None = None) -> None:
        """Build one Presidio recogniser per pattern definition.

        Parameters
        ----------
        locales:
            If None, load every pattern.  Otherwise load GLOBAL patterns
            plus the listed locale codes.
        """
        self._definitions: list[PatternDefinition] = get_patterns(locales)
        self._recognisers: list[tuple[PatternDefinition, PatternRecognizer]] = []
        for pat_def in self._definitions:
            recogniser = PatternRecognizer(
                supported_entity=str(pat_def.entity_type),
                name=pat_def.name,
                patterns=[
                    Pattern(
                        name=pat_def.name,
                        regex=pat_def.regex,
                        score=pat_def.score,
                    )
                ],
                global_regex_flags=PATTERN_FLAGS,
            )
            self._recognisers.append((pat_def, recogniser))

    @property
    def definitions(self) -> list[PatternDefinition]:
        return list(self._definitions)

    def detect(self, text: str) -> list[Entity]:
        """Return one PATTERN entity per recogniser hit, ordered by position.

        Matches shorter than ``MIN_MATCH_LENGTH`` characters are ignored.
        Overlaps are left for the candidate generator to resolve.
        """
        entities: list[Entity] = []
        if not text:
            return entities

        for pat_def, recogniser in self._recognisers:
            hits = recogniser.analyze(
                text=text,
                entities=[str(pat_def.entity_type)],
                nlp_artifacts=None,
            )
            for hit in hits:
                if hit.end - hit.start < MIN_MATCH_LENGTH:
                    continue
                entities.append(Entity(
                    type=pat_def.entity_type,
                    start=hit.start,
                    end=hit.end,
                    text=text[hit.start:hit.end],
                    confidence=hit.score,
                    source=DetectionSource.PATTERN,
                    metadata={"pattern": pat_def.name, "locale": pat_def.locale},
                ))

            # SAFETY: log only metadata, never the matched text span
            if hits:
                logger.debug(
                    "pattern_detector: pattern=%s entity_type=%s hits=%d",
                    pat_def.name,
                    pat_def.entity_type,
                    len(hits),
                )

        entities.sort(key=lambda e: (e.start, -e.end))
        return entities

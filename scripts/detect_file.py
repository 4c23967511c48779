#!/usr/bin/env python3
"""Run the detection pipeline on a UTF-8 text file and print the result as JSON.

Only metadata is printed (type, span, confidence, source, decisions) plus
the metrics aggregate; covered text is left out unless --show-text is given.

Usage:
    python scripts/detect_file.py letter.txt
    python scripts/detect_file.py letter.txt --language de --show-text
    NER_BACKEND=spacy python scripts/detect_file.py letter.txt
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

# Ensure project root is on sys.path
sys.path.insert(0, ".")

from anonymizer.core.logging import setup_logging
from anonymizer.ml.metrics import get_metrics_collector
from anonymizer.pii.entities import Entity, GroupedAddress
from anonymizer.pipeline.document import DocumentInput
from anonymizer.pipeline.orchestrator import Orchestrator, PipelineResult


def entity_to_dict(entity: Entity, show_text: bool) -> dict[str, Any]:
    data: dict[str, Any] = {
        "type": str(entity.type),
        "start": entity.start,
        "end": entity.end,
        "confidence": round(entity.confidence, 4),
        "source": str(entity.source),
        "validation": str(entity.validation),
        "flagged_for_review": entity.flagged_for_review,
    }
    if isinstance(entity, GroupedAddress):
        data["pattern"] = str(entity.pattern)
        data["auto_anonymize"] = entity.auto_anonymize
        data["components"] = [entity_to_dict(c, show_text) for c in entity.components]
        data["scoring_factors"] = entity.scoring_factors
    if show_text:
        data["text"] = entity.text
    return data


def result_to_dict(result: PipelineResult, show_text: bool) -> dict[str, Any]:
    return {
        "status": str(result.status),
        "partial_reasons": result.partial_reasons,
        "classification": {
            "type": str(result.classification.type),
            "confidence": round(result.classification.confidence, 4),
            "language": result.classification.language,
            "features": list(result.classification.features),
        },
        "duration_ms": round(result.duration_ms, 1),
        "entities": [entity_to_dict(e, show_text) for e in result.entities],
        "metrics": get_metrics_collector().export(),
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("path", type=Path, help="UTF-8 text file")
    parser.add_argument("--language", help="language hint (en, de, fr, it)")
    parser.add_argument("--show-text", action="store_true", help="include covered text in the output")
    args = parser.parse_args(argv)

    setup_logging()
    text = args.path.read_text(encoding="utf-8")
    document = DocumentInput(
        text=text,
        filename=args.path.name,
        source_format="txt",
        language_hint=args.language,
    )

    orchestrator = Orchestrator.from_settings()
    try:
        result = orchestrator.run_sync(document)
    finally:
        orchestrator.close()

    json.dump(result_to_dict(result, args.show_text), sys.stdout, ensure_ascii=False, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())

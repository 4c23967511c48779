"""Merge token-level NER predictions into entity spans.

Token-classification models emit one prediction per (sub)word token with
BIO-prefixed labels (``B-PER``, ``I-PER``, ``O``).  Aggregated pipelines
emit ``entity_group`` without a prefix instead.  Both shapes are accepted.

Merge rule: a token continues the open span when it has the same bare
label, is not a ``B-`` token, and starts at most ``MAX_MERGE_GAP``
characters after the open span ends.  Scores of merged tokens are
averaged.
"""
from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)

MAX_MERGE_GAP: int = 5
MIN_ENTITY_LENGTH: int = 2

_OUTSIDE_LABEL = "O"


def _split_label(raw: str) -> tuple[str | None, str]:
    """Return ``(prefix, bare_label)``; prefix is ``"B"``, ``"I"`` or None."""
    if len(raw) > 2 and raw[1] == "-" and raw[0] in ("B", "I"):
        return raw[0], raw[2:]
    return None, raw


def merge_subword_tokens(
    predictions: list[dict[str, Any]],
    text: str | None = None,
) -> list[dict[str, Any]]:
    """Collapse consecutive same-label tokens into single predictions.

    Parameters
    ----------
    predictions:
        Raw model output; each item has ``start``, ``end``, ``score`` and
        ``entity`` or ``entity_group``.
    text:
        Optional source text; when given, ``word`` on each merged span is
        re-sliced from it so that subword markers never leak out.

    Returns
    -------
    list[dict]
        Items with ``entity_group``, ``start``, ``end``, ``score`` (and
        ``word`` when *text* is given), ordered by ``start``.  Spans shorter
        than ``MIN_ENTITY_LENGTH`` characters are dropped.
    """
    ordered = sorted(predictions, key=lambda p: (int(p["start"]), int(p["end"])))
    merged: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None
    scores: list[float] = []

    def _close() -> None:
        if current is None:
            return
        current["score"] = sum(scores) / len(scores)
        merged.append(current)

    for prediction in ordered:
        raw_label = str(prediction.get("entity_group") or prediction.get("entity") or _OUTSIDE_LABEL)
        prefix, label = _split_label(raw_label)
        if label == _OUTSIDE_LABEL:
            _close()
            current, scores = None, []
            continue

        start, end = int(prediction["start"]), int(prediction["end"])
        score = float(prediction.get("score", 0.0))
        continues = (
            current is not None
            and current["entity_group"] == label
            and prefix != "B"
            and start - current["end"] <= MAX_MERGE_GAP
        )
        if continues:
            current["end"] = max(current["end"], end)
            scores.append(score)
            continue

        _close()
        current = {"entity_group": label, "start": start, "end": end}
        scores = [score]

    _close()

    result = []
    for item in merged:
        if item["end"] - item["start"] < MIN_ENTITY_LENGTH:
            continue
        if text is not None:
            item["word"] = text[item["start"]:item["end"]]
        result.append(item)

    if len(result) != len(predictions):
        logger.debug("subword_merger: tokens=%d spans=%d", len(predictions), len(result))
    return result

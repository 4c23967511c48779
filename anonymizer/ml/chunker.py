"""Token chunker: split long text into bounded, overlapping model windows.

The NER model has a fixed context (512 tokens by default).  Longer
documents are cut at sentence boundaries only, never mid-sentence, and
the trailing sentences of each finished chunk are repeated at the start
of the next one so that entities near a boundary are seen whole at least
once.

Every chunk carries ``start`` / ``end`` in original-document coordinates,
so predictions made on ``chunk.text`` can be shifted back with
``merge_chunk_predictions``.

Token counts are estimated, not tokenised: ``max(ceil(len / 4), words)``.
This over-estimates for most European text, which keeps chunks safely
inside the model limit.

Safety rule: chunk contents are never logged, only counts.
"""
from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS: int = 512
DEFAULT_OVERLAP_TOKENS: int = 50
CHARS_PER_TOKEN: int = 4

_WORD_RE = re.compile(r"\S+")
_BOUNDARY_RE = re.compile(r"[.!?](\s+|$)")
_SENTENCE_START_RE = re.compile(r"[A-ZÄÖÜÀÂÇÉÈÊËÎÏÔÛÙŸŒÆ]")

# Tokens that end in "." without ending a sentence.
_ABBREVIATIONS: frozenset[str] = frozenset({
    "Mr", "Mrs", "Ms", "Dr", "Prof", "Sr", "Jr", "vs", "etc",
    "e.g", "i.e", "Inc", "Ltd", "Corp", "Co",
})


@dataclass(frozen=True)
class TextChunk:
    """One model window in original-document coordinates."""

    text: str
    start: int
    end: int
    index: int


@dataclass
class ChunkPrediction:
    """Raw model output for one chunk; offsets are chunk-local."""

    chunk_index: int
    predictions: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class _Sentence:
    start: int
    end: int
    tokens: int


def estimate_token_count(text: str) -> int:
    """Return a conservative token estimate for *text*."""
    if not text:
        return 0
    by_chars = math.ceil(len(text) / CHARS_PER_TOKEN)
    by_words = len(_WORD_RE.findall(text))
    return max(by_chars, by_words)


def _previous_token(text: str, pos: int) -> str:
    """Return the whitespace-delimited token ending at *pos* (exclusive)."""
    begin = pos
    while begin > 0 and not text[begin - 1].isspace():
        begin -= 1
    return text[begin:pos].lstrip("([{\"'«")


def split_into_sentences(text: str) -> list[tuple[int, int]]:
    """Return ``(start, end)`` spans of the sentences in *text*.

    A sentence ends at ``.``, ``!`` or ``?`` followed by the end of text,
    a newline, or whitespace and an uppercase letter.  Known abbreviations
    never end a sentence.  Each span includes its trailing whitespace so
    that consecutive spans tile the text without gaps.
    """
    spans: list[tuple[int, int]] = []
    sentence_start = 0

    for match in _BOUNDARY_RE.finditer(text):
        punct_pos = match.start()
        whitespace = match.group(1)
        after = match.end()

        if text[punct_pos] == "." and _previous_token(text, punct_pos) in _ABBREVIATIONS:
            continue

        at_end = after >= len(text)
        has_newline = "\n" in whitespace
        next_upper = bool(whitespace) and _SENTENCE_START_RE.match(text, after) is not None
        if not (at_end or has_newline or next_upper):
            continue

        spans.append((sentence_start, after))
        sentence_start = after

    if sentence_start < len(text):
        spans.append((sentence_start, len(text)))
    return spans


def _split_by_characters(
    text: str,
    max_tokens: int,
    overlap_tokens: int,
) -> list[TextChunk]:
    """Fallback: fixed character windows with character overlap."""
    window = max(1, max_tokens * CHARS_PER_TOKEN)
    overlap = min(overlap_tokens * CHARS_PER_TOKEN, window - 1)
    step = max(1, window - overlap)

    chunks: list[TextChunk] = []
    pos = 0
    while pos < len(text):
        end = min(len(text), pos + window)
        chunks.append(TextChunk(text=text[pos:end], start=pos, end=end, index=len(chunks)))
        if end == len(text):
            break
        pos += step
    return chunks


def _overlap_tail(sentences: list[_Sentence], overlap_tokens: int) -> list[_Sentence]:
    """Trailing sentences of a finished chunk worth at most *overlap_tokens*."""
    tail: list[_Sentence] = []
    total = 0
    for sentence in reversed(sentences[1:]):
        if total + sentence.tokens > overlap_tokens:
            break
        tail.insert(0, sentence)
        total += sentence.tokens
    return tail


def chunk_text(
    text: str,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    overlap_tokens: int = DEFAULT_OVERLAP_TOKENS,
) -> list[TextChunk]:
    """Split *text* into ordered, sentence-aligned, overlapping chunks.

    Parameters
    ----------
    text:
        Full document text.  Never logged.
    max_tokens:
        Estimated token budget per chunk.
    overlap_tokens:
        Estimated tokens of trailing context repeated in the next chunk.

    Returns
    -------
    list[TextChunk]
        Empty for empty input.  Exactly one chunk equal to *text* when the
        whole text fits in *max_tokens*.  A single sentence larger than
        *max_tokens* is emitted as its own chunk, never truncated.
        Never raises; segmentation problems fall back to character windows.
    """
    if not text:
        return []

    if estimate_token_count(text) <= max_tokens:
        return [TextChunk(text=text, start=0, end=len(text), index=0)]

    try:
        spans = split_into_sentences(text)
    except (re.error, RecursionError, ValueError) as exc:
        logger.warning(
            "chunker: sentence segmentation failed (%s); using character windows (length=%d)",
            type(exc).__name__,
            len(text),
        )
        return _split_by_characters(text, max_tokens, overlap_tokens)

    sentences = [
        _Sentence(start=s, end=e, tokens=estimate_token_count(text[s:e])) for s, e in spans
    ]
    if not sentences:
        return _split_by_characters(text, max_tokens, overlap_tokens)

    chunks: list[TextChunk] = []
    current: list[_Sentence] = []
    current_tokens = 0

    def _emit(group: list[_Sentence]) -> None:
        start, end = group[0].start, group[-1].end
        chunks.append(TextChunk(text=text[start:end], start=start, end=end, index=len(chunks)))

    for sentence in sentences:
        if current and current_tokens + sentence.tokens > max_tokens:
            _emit(current)
            current = _overlap_tail(current, overlap_tokens)
            current_tokens = sum(s.tokens for s in current)
            if current_tokens + sentence.tokens > max_tokens:
                current, current_tokens = [], 0
        current.append(sentence)
        current_tokens += sentence.tokens

    if current:
        _emit(current)

    logger.debug(
        "chunker: length=%d sentences=%d chunks=%d max_tokens=%d overlap_tokens=%d",
        len(text),
        len(sentences),
        len(chunks),
        max_tokens,
        overlap_tokens,
    )
    return chunks


def _label(prediction: dict[str, Any]) -> str:
    return str(prediction.get("entity_group") or prediction.get("entity") or "")


def merge_chunk_predictions(
    chunk_predictions: list[ChunkPrediction],
    chunks: list[TextChunk],
) -> list[dict[str, Any]]:
    """Shift chunk-local predictions into document coordinates and dedupe.

    A prediction repeated in the overlap zone of two adjacent chunks is
    kept once per ``(label, start, end)``, preferring the higher score.
    The result is ordered by document position regardless of the order in
    which chunk results arrived.
    """
    offsets = {chunk.index: chunk.start for chunk in chunks}
    best: dict[tuple[str, int, int], dict[str, Any]] = {}

    for chunk_prediction in chunk_predictions:
        offset = offsets.get(chunk_prediction.chunk_index)
        if offset is None:
            logger.warning(
                "chunker: predictions for unknown chunk index=%d dropped",
                chunk_prediction.chunk_index,
            )
            continue
        for prediction in chunk_prediction.predictions:
            adjusted = dict(prediction)
            adjusted["start"] = int(prediction["start"]) + offset
            adjusted["end"] = int(prediction["end"]) + offset
            key = (_label(adjusted), adjusted["start"], adjusted["end"])
            existing = best.get(key)
            if existing is None or float(adjusted.get("score", 0.0)) > float(existing.get("score", 0.0)):
                best[key] = adjusted

    return sorted(best.values(), key=lambda p: (p["start"], p["end"], _label(p)))

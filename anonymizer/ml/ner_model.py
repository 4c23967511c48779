"""Statistical NER backends.

Every backend is a plain callable ``model(text) -> list[dict]`` returning
Hugging Face token-classification style predictions::

    {"entity_group" | "entity": str, "start": int, "end": int, "score": float}

with offsets relative to *text*.  Backends are synchronous; the
``InferenceWorker`` runs them off the event loop.

Backends
--------
none   : no statistical model; detection is pattern-only.
spacy  : a locally installed spaCy pipeline, loaded lazily on first call.
http   : a token-classification service reached over HTTP with ``httpx``.

Air-gap rule: the spaCy backend never downloads models; the pipeline must
be pre-installed (``python -m spacy download de_core_news_sm``).
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

# spaCy pipelines expose no per-entity probability.
SPACY_FIXED_SCORE: float = 0.85

# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class InferenceTimeoutError(TimeoutError):
    """Raised when a single inference attempt exceeds its timeout."""


class NerServiceError(ConnectionError):
    """Raised when the NER service is unreachable or answers with an error."""


class ModelLoadError(RuntimeError):
    """Raised when a local model cannot be loaded (never retried)."""


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class NerModel(Protocol):
    def __call__(self, text: str) -> list[dict[str, Any]]:
        ...


# ---------------------------------------------------------------------------
# spaCy backend
# ---------------------------------------------------------------------------


class SpacyNerModel:
    """Local spaCy pipeline; loaded on first call, on the calling thread."""

    def __init__(self, model_name: str, *, score: float = SPACY_FIXED_SCORE) -> None:
        self.model_name = model_name
        self.score = score
        self._nlp: Any = None
        self._lock = threading.Lock()

    def load(self) -> Any:
        if self._nlp is None:
            with self._lock:
                if self._nlp is None:
                    import spacy

                    try:
                        self._nlp = spacy.load(self.model_name)
                    except OSError as exc:
                        raise ModelLoadError(f"model not found: {self.model_name}") from exc
                    logger.info("ner_model: loaded spaCy pipeline=%s", self.model_name)
        return self._nlp

    def __call__(self, text: str) -> list[dict[str, Any]]:
        doc = self.load()(text)
        return [
            {
                "entity_group": ent.label_,
                "start": ent.start_char,
                "end": ent.end_char,
                "score": self.score,
            }
            for ent in doc.ents
        ]


# ---------------------------------------------------------------------------
# HTTP backend
# ---------------------------------------------------------------------------


class HttpNerModel:
    """Client for a token-classification service (``POST {base_url}/predict``).

    The service receives ``{"inputs": text}`` and answers with a JSON list
    of predictions.  Error messages carry the HTTP status code so that the
    retry wrapper can classify them.
    """

    def __init__(self, base_url: str, *, timeout_s: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    def __call__(self, text: str) -> list[dict[str, Any]]:
        try:
            response = httpx.post(
                f"{self.base_url}/predict",
                json={"inputs": text},
                timeout=self.timeout_s,
            )
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise InferenceTimeoutError("NER request timed out") from exc
        except httpx.ConnectError as exc:
            raise NerServiceError("Cannot open connection to NER service") from exc
        except httpx.HTTPStatusError as exc:
            raise NerServiceError(
                f"NER service returned HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise NerServiceError(f"NER service network error: {type(exc).__name__}") from exc

        data = response.json()
        if not isinstance(data, list):
            raise NerServiceError("NER service response has an unsupported shape (expected a list)")
        return [item for item in data if isinstance(item, dict)]


def build_ner_model(settings: Any) -> NerModel | None:
    """Return the backend selected by ``settings.ner_backend`` (None for ``none``).

    Raises
    ------
    ValueError
        For an unknown backend name.
    """
    backend = settings.ner_backend.strip().lower()
    if backend == "none":
        return None
    if backend == "spacy":
        return SpacyNerModel(settings.spacy_model)
    if backend == "http":
        return HttpNerModel(settings.ner_service_url, timeout_s=settings.inference_timeout_s)
    raise ValueError(f"unsupported NER backend: {settings.ner_backend!r}")

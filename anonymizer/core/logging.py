"""Process logging setup with a last-line PII redaction filter.

Modules log metadata only (types, counts, lengths).  ``PIISafeFilter``
is the backstop for a value that slips into a message or its args anyway:
Swiss identifiers, IBANs, phone numbers and e-mail addresses are replaced
with ``[REDACTED]`` before any handler formats the record.
"""
import logging
import logging.config
import re

REDACTED = "[REDACTED]"

PII_PATTERNS: dict[str, re.Pattern[str]] = {
    "email": re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}"),
    "avs": re.compile(r"\b756[.\s]?\d{4}[.\s]?\d{4}[.\s]?\d{2}\b"),
    "iban": re.compile(r"\b[A-Z]{2}\d{2}(?:\s?[A-Z0-9]{4}){3,7}(?:\s?[A-Z0-9]{1,3})?\b"),
    "phone_intl": re.compile(r"(?:\+|\b00)\d{2}[\s.-]?(?:\(0\)\s?)?\d{2,3}(?:[\s.-]?\d{2,4}){2,3}\b"),
    "phone_local": re.compile(r"\b0\d{2}[\s.-]?\d{3}[\s.-]?\d{2}[\s.-]?\d{2}\b"),
}

# ``raw_value=...`` keeps its key so the log line still shows what was hidden.
RAW_VALUE_RE = re.compile(r"(?i)(raw_value\s*[=:]\s*)([^,\s]+)")

# Third-party loggers that are chatty below WARNING.
QUIET_LOGGERS: tuple[str, ...] = ("presidio-analyzer", "httpx", "httpcore", "spacy")


def redact(text: str) -> str:
    """Return *text* with every known PII shape replaced by ``[REDACTED]``."""
    redacted = RAW_VALUE_RE.sub(rf"\1{REDACTED}", text)
    for pattern in PII_PATTERNS.values():
        redacted = pattern.sub(REDACTED, redacted)
    return redacted


class PIISafeFilter(logging.Filter):
    def _sanitize(self, value: object) -> object:
        return redact(value) if isinstance(value, str) else value

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = self._sanitize(record.msg)

        if isinstance(record.args, tuple):
            record.args = tuple(self._sanitize(item) for item in record.args)
        elif isinstance(record.args, dict):
            record.args = {key: self._sanitize(value) for key, value in record.args.items()}

        return True


def _quiet_logger() -> dict:
    return {"handlers": ["console"], "level": "WARNING", "propagate": False}


def setup_logging(level: str | None = None) -> None:
    """Install the console handler with the PII filter on the root logger.

    *level* overrides ``LOG_LEVEL`` from the settings.
    """
    from anonymizer.core.settings import get_settings

    root_level = (level or get_settings().log_level).upper()
    loggers: dict[str, dict] = {"": {"handlers": ["console"], "level": root_level}}
    loggers.update({name: _quiet_logger() for name in QUIET_LOGGERS})

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "pii_safe": {
                    "()": "anonymizer.core.logging.PIISafeFilter",
                }
            },
            "formatters": {
                "default": {
                    "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
                }
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "filters": ["pii_safe"],
                }
            },
            "loggers": loggers,
        }
    )

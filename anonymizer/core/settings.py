from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = Field(default="Anonymizer Core", alias="APP_NAME")
    app_env: str = Field(default="local", alias="APP_ENV")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Statistical model
    ner_backend: str = Field(default="none", alias="NER_BACKEND")
    spacy_model: str = Field(default="de_core_news_sm", alias="SPACY_MODEL")
    ner_service_url: str = Field(default="http://localhost:8080", alias="NER_SERVICE_URL")
    ml_confidence_threshold: float = Field(default=0.3, alias="ML_CONFIDENCE_THRESHOLD")
    inference_timeout_s: float = Field(default=30.0, alias="INFERENCE_TIMEOUT_S")
    inference_platform: str = Field(default="server", alias="INFERENCE_PLATFORM")

    # Chunking
    chunk_max_tokens: int = Field(default=512, alias="CHUNK_MAX_TOKENS")
    chunk_overlap_tokens: int = Field(default=50, alias="CHUNK_OVERLAP_TOKENS")

    # Retry policy
    retry_max_attempts: int = Field(default=3, alias="RETRY_MAX_ATTEMPTS")
    retry_initial_delay_ms: int = Field(default=100, alias="RETRY_INITIAL_DELAY_MS")
    retry_backoff_multiplier: float = Field(default=2.0, alias="RETRY_BACKOFF_MULTIPLIER")
    retry_max_delay_ms: int = Field(default=5000, alias="RETRY_MAX_DELAY_MS")

    # Review decisions
    review_threshold: float = Field(default=0.6, alias="REVIEW_THRESHOLD")
    auto_anonymize_threshold: float = Field(default=0.8, alias="AUTO_ANONYMIZE_THRESHOLD")

    # Document rules and context
    enabled_rule_sets: str = Field(
        default="letter,invoice,contract,report,medical,legal,correspondence,form",
        alias="ENABLED_RULE_SETS",
    )
    context_window_chars: int = Field(default=50, alias="CONTEXT_WINDOW_CHARS")
    header_ratio: float = Field(default=0.2, alias="HEADER_RATIO")
    footer_ratio: float = Field(default=0.3, alias="FOOTER_RATIO")

    metrics_retention: int = Field(default=1000, alias="METRICS_RETENTION")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

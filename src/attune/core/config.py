"""Configuration for Attune using environment variables."""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Environment Variables:
        LLM_API_KEY: API key for the LLM-backed content generator (optional)
        LLM_BASE_URL: Base URL for the LLM API
        LLM_MODEL: Model name to use for content generation
        ATTUNE_DB_PATH: Path to SQLite database (default: ./data/attune.db)
        ATTUNE_LOG_LEVEL: Logging level (default: INFO)

    Every knowledge, context and scheduling constant below is tunable;
    none of them is part of a correctness contract.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # LLM Configuration (external content generator)
    llm_api_key: str = Field(
        default="",
        validation_alias="LLM_API_KEY",
        description="API key for the LLM provider",
    )
    llm_base_url: str = Field(
        default="https://api.openai.com/v1",
        validation_alias="LLM_BASE_URL",
        description="Base URL for the LLM API (OpenAI or compatible)",
    )
    llm_model: str = Field(
        default="gpt-4o-mini",
        validation_alias="LLM_MODEL",
        description="Model name to use",
    )

    # Database Configuration
    db_path: Path = Field(
        default=Path("./data/attune.db"),
        validation_alias="ATTUNE_DB_PATH",
        description="Path to SQLite database",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        validation_alias="ATTUNE_LOG_LEVEL",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    # Knowledge graph
    gap_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        validation_alias="ATTUNE_GAP_THRESHOLD",
        description="Mastery below this counts as a knowledge gap",
    )
    evidence_log_size: int = Field(
        default=50,
        ge=1,
        validation_alias="ATTUNE_EVIDENCE_LOG_SIZE",
        description="Most-recent evidence items kept per concept",
    )
    learning_rate: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        validation_alias="ATTUNE_LEARNING_RATE",
        description="Evidence weight at zero confidence (on top of min_weight)",
    )
    min_weight: float = Field(
        default=0.05,
        ge=0.0,
        le=1.0,
        validation_alias="ATTUNE_MIN_WEIGHT",
        description="Evidence weight floor once confidence saturates",
    )
    confidence_step: float = Field(
        default=0.2,
        gt=0.0,
        le=1.0,
        validation_alias="ATTUNE_CONFIDENCE_STEP",
        description="Fraction of remaining confidence gained per evidence item",
    )
    confusion_window_seconds: float = Field(
        default=900.0,
        gt=0.0,
        validation_alias="ATTUNE_CONFUSION_WINDOW",
        description="Recency window for error/concept co-occurrence",
    )
    confusion_threshold: int = Field(
        default=2,
        ge=1,
        validation_alias="ATTUNE_CONFUSION_THRESHOLD",
        description="Co-occurrences within the window that mark a concept confused",
    )
    confusion_penalty: float = Field(
        default=0.25,
        ge=0.0,
        le=1.0,
        validation_alias="ATTUNE_CONFUSION_PENALTY",
        description="Fraction of confidence removed when a concept is confused",
    )

    # Context state
    context_ttl_seconds: float = Field(
        default=300.0,
        gt=0.0,
        validation_alias="ATTUNE_CONTEXT_TTL",
        description="Snapshots older than this are flagged stale on read",
    )
    read_wait_seconds: float = Field(
        default=0.25,
        ge=0.0,
        validation_alias="ATTUNE_READ_WAIT",
        description="Bounded wait for an in-flight merge before serving the committed version",
    )
    subscriber_retries: int = Field(
        default=2,
        ge=0,
        validation_alias="ATTUNE_SUBSCRIBER_RETRIES",
        description="Redelivery attempts for a failing change subscriber",
    )
    autopersist_context: bool = Field(
        default=True,
        validation_alias="ATTUNE_AUTOPERSIST_CONTEXT",
        description="Persist every committed context version",
    )

    # Thought loop
    tick_interval_seconds: float = Field(
        default=30.0,
        gt=0.0,
        validation_alias="ATTUNE_TICK_INTERVAL",
        description="Fixed tick interval of the thought loop",
    )
    analysis_timeout_seconds: float = Field(
        default=5.0,
        gt=0.0,
        validation_alias="ATTUNE_ANALYSIS_TIMEOUT",
        description="Deadline for one analysis pass",
    )
    generator_timeout_seconds: float = Field(
        default=20.0,
        gt=0.0,
        validation_alias="ATTUNE_GENERATOR_TIMEOUT",
        description="Deadline for one external generator call",
    )
    rate_limit_count: int = Field(
        default=3,
        ge=1,
        validation_alias="ATTUNE_RATE_LIMIT_COUNT",
        description="Max interventions delivered per rolling window (K)",
    )
    rate_limit_window_seconds: float = Field(
        default=600.0,
        gt=0.0,
        validation_alias="ATTUNE_RATE_LIMIT_WINDOW",
        description="Rolling window length (W)",
    )
    cooldown_base_seconds: float = Field(
        default=300.0,
        ge=0.0,
        validation_alias="ATTUNE_COOLDOWN_BASE",
        description="Cool-down after the first dismissal of a problem signature",
    )
    cooldown_max_seconds: float = Field(
        default=86400.0,
        ge=0.0,
        validation_alias="ATTUNE_COOLDOWN_MAX",
        description="Upper bound of the dismissal backoff",
    )
    intervention_ttl_seconds: float = Field(
        default=3600.0,
        gt=0.0,
        validation_alias="ATTUNE_INTERVENTION_TTL",
        description="Delivered interventions without a response expire after this",
    )
    discard_queued_on_stop: bool = Field(
        default=True,
        validation_alias="ATTUNE_DISCARD_QUEUED_ON_STOP",
        description="Discard queued interventions when monitoring stops",
    )
    max_dependencies_per_component: int = Field(
        default=8,
        ge=1,
        validation_alias="ATTUNE_MAX_COMPONENT_DEPENDENCIES",
        description="Components depending on more than this are flagged over-coupled",
    )

    # Storage
    storage_retry_attempts: int = Field(
        default=3,
        ge=1,
        validation_alias="ATTUNE_STORAGE_RETRIES",
        description="Attempts per repository call before giving up",
    )
    storage_retry_backoff_seconds: float = Field(
        default=0.1,
        ge=0.0,
        validation_alias="ATTUNE_STORAGE_BACKOFF",
        description="Initial backoff between repository retries (doubles per attempt)",
    )

    @property
    def log_level_int(self) -> int:
        """Get log level as integer for logging module."""
        return getattr(logging, self.log_level.upper(), logging.INFO)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def get_llm_client():
    """Get configured async OpenAI client for the content generator.

    Returns:
        AsyncOpenAI client configured for the current provider

    Raises:
        ValueError: If LLM_API_KEY is not set
    """
    from openai import AsyncOpenAI

    settings = get_settings()
    if not settings.llm_api_key:
        raise ValueError(
            "LLM_API_KEY environment variable is required for LLM-backed generation. "
            "Without it, interventions use template content."
        )

    return AsyncOpenAI(
        api_key=settings.llm_api_key,
        base_url=settings.llm_base_url,
    )

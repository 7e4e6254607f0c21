"""
Application configuration management using Pydantic Settings.

This module provides a type-safe, centralized configuration system
that loads from environment variables with sensible defaults.
"""

import os
from datetime import timedelta

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """
    Application configuration loaded from environment variables.

    All settings can be overridden via .env file or environment variables.
    Settings are validated at startup using Pydantic.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ===== API Keys =====
    ANTHROPIC_API_KEY: str | None = Field(
        default=None,
        description="Anthropic API key for Claude (required for generation and editing stages)"
    )

    # ===== Model Configuration =====
    WRITER_MODEL: str = Field(
        default="claude-sonnet-4-5-20250929",
        description="Model used to draft chapters and outlines"
    )

    EDITOR_MODEL: str = Field(
        default="claude-opus-4-5-20251101",
        description="Model used by the four editing passes"
    )

    SUMMARY_MODEL: str = Field(
        default="claude-3-5-haiku-20241022",
        description="Model used for chapter summaries and character state updates"
    )

    # ===== Storage =====
    STORAGE_PATH: str | None = Field(
        default=None,
        description="Persistent volume mount. If set, the job database lives inside it"
    )

    JOB_DB_PATH: str = Field(
        default="novelforge.db",
        description="SQLite file holding jobs, chapters and outlines"
    )

    @property
    def job_db_path(self) -> str:
        """Get the database path, using persistent storage if available."""
        if self.STORAGE_PATH and not os.path.isabs(self.JOB_DB_PATH):
            return os.path.join(self.STORAGE_PATH, self.JOB_DB_PATH)
        return self.JOB_DB_PATH

    # ===== Worker Settings =====
    WORKER_POLL_INTERVAL_SECONDS: float = Field(
        default=1.0,
        gt=0,
        le=300,
        description="Seconds between queue polls when no job is pending"
    )

    JOB_MAX_ATTEMPTS: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Execution attempts before a retryable failure becomes permanent"
    )

    JOB_RETRY_BACKOFF_SECONDS: float = Field(
        default=30.0,
        ge=0,
        description="Delay before the first retry; doubles with every further attempt"
    )

    JOB_RETRY_BACKOFF_MAX_SECONDS: float = Field(
        default=600.0,
        ge=0,
        description="Upper bound for the retry delay"
    )

    RATE_LIMIT_FALLBACK_MINUTES: float = Field(
        default=30,
        gt=0,
        description="Queue pause after a rate limit error that carries no reset time"
    )

    WORKER_SHUTDOWN_TIMEOUT_SECONDS: float = Field(
        default=120.0,
        ge=0,
        description="How long stop() waits for the in-flight job before abandoning it"
    )

    STALE_JOB_THRESHOLD_MINUTES: float = Field(
        default=0,
        ge=0,
        description="Running jobs older than this are reclaimed at startup (0 = all, single-worker only)"
    )

    STORE_ERROR_BACKOFF_SECONDS: float = Field(
        default=5.0,
        ge=0,
        description="Pause before polling again after the job store raised an error"
    )

    EMBEDDED_WORKER: bool = Field(
        default=True,
        description="Run the queue worker inside the web process (disable when running start.py worker)"
    )

    # ===== Progress Tracking =====
    PROGRESS_RETENTION_MINUTES: float = Field(
        default=30,
        gt=0,
        description="Progress snapshots older than this are purged"
    )

    @field_validator('EMBEDDED_WORKER', mode='before')
    @classmethod
    def parse_bool_string(cls, v):
        """Parse boolean from string values (container env vars are strings)."""
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.lower() in ("true", "1", "yes", "on")
        return False

    @property
    def stale_job_threshold(self) -> timedelta:
        return timedelta(minutes=self.STALE_JOB_THRESHOLD_MINUTES)

    @property
    def progress_retention(self) -> timedelta:
        return timedelta(minutes=self.PROGRESS_RETENTION_MINUTES)

    @property
    def rate_limit_fallback(self) -> timedelta:
        return timedelta(minutes=self.RATE_LIMIT_FALLBACK_MINUTES)

    # ===== Application Settings =====
    ENVIRONMENT: str = Field(
        default="development",
        description="Environment mode: development or production"
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    ALLOWED_ORIGINS: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins. Use '*' for all (dev only)."
    )

    @property
    def allowed_origins_list(self) -> list[str]:
        """Get list of allowed CORS origins."""
        if self.ALLOWED_ORIGINS == "*":
            return ["*"]
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    @property
    def can_call_models(self) -> bool:
        """Check if the generation and editing agents have credentials."""
        return self.ANTHROPIC_API_KEY is not None


# Global configuration instance
# Import this in other modules: from novelforge.config import config
config = AppConfig()


if __name__ == "__main__":
    print("Configuration loaded successfully!")
    print(f"Database: {config.job_db_path}")
    print(f"Writer model: {config.WRITER_MODEL}")
    print(f"Editor model: {config.EDITOR_MODEL}")
    print(f"Poll interval: {config.WORKER_POLL_INTERVAL_SECONDS}s")
    print(f"Max attempts: {config.JOB_MAX_ATTEMPTS}")
    print(f"Embedded worker: {'✓' if config.EMBEDDED_WORKER else '✗'}")
    print(f"Anthropic: {'✓' if config.can_call_models else '✗'}")

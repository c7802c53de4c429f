"""Pydantic configuration schema for the job application tracker.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup.

Usage:
    from jobtracker.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class GoogleConfig(BaseModel):
    """Google OAuth client configuration for Gmail access."""

    client_id: str = Field(description="Google OAuth client ID")
    client_secret_env: str = Field(
        default="GOOGLE_CLIENT_SECRET",
        description="Environment variable holding the OAuth client secret",
    )
    token_uri: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="Google OAuth2 token endpoint",
    )
    scopes: list[str] = Field(
        default=["https://www.googleapis.com/auth/gmail.readonly"],
        description="Gmail API scopes granted to stored refresh tokens",
    )

    @field_validator("client_id")
    @classmethod
    def validate_client_id(cls, v: str) -> str:
        """Ensure the client ID is present."""
        if not v or not v.strip():
            raise ValueError("Google client_id cannot be empty")
        return v.strip()


class SyncConfig(BaseModel):
    """Mailbox sync and scheduler configuration."""

    interval_hours: int = Field(
        default=6,
        ge=1,
        le=168,
        description="How often the background cadence syncs every connected mailbox",
    )
    user_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        le=60.0,
        description="Politeness delay between users in one cadence pass",
    )
    first_run_delay_seconds: int = Field(
        default=60,
        ge=0,
        description="Delay before the first cadence pass after startup",
    )
    lookback_days: int = Field(
        default=90,
        ge=1,
        le=365,
        description="Fetch window for an owner that has never synced",
    )
    max_results: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Maximum candidate messages listed per sync",
    )
    body_max_chars: int = Field(
        default=2000,
        ge=100,
        le=20000,
        description="Email body characters sent to the extractor",
    )


class ExtractionConfig(BaseModel):
    """Claude fact extraction configuration."""

    model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model used to extract application facts from email",
    )
    max_tokens: int = Field(
        default=500,
        ge=100,
        le=4096,
        description="Output token budget per extraction",
    )
    confidence_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Facts below this confidence are discarded",
    )
    requests_per_second: float = Field(
        default=2.0,
        gt=0.0,
        description="Proactive rate limit for Claude calls",
    )


class DatabaseConfig(BaseModel):
    """SQLite store configuration."""

    path: str = Field(
        default="data/jobtracker.db",
        description="Path to the SQLite database file",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class LLMLoggingConfig(BaseModel):
    """LLM request logging configuration."""

    enabled: bool = Field(default=True, description="Enable LLM request logging")
    retention_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Days to retain LLM request logs",
    )
    log_prompts: bool = Field(
        default=True,
        description="Store full prompts (disable to keep email bodies out of the log)",
    )


class AppConfig(BaseModel):
    """Root configuration schema for the job application tracker.

    If validation fails on startup, the application exits with a clear error.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    google: GoogleConfig
    sync: SyncConfig = Field(default_factory=SyncConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    llm_logging: LLMLoggingConfig = Field(default_factory=LLMLoggingConfig)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Root log level",
    )

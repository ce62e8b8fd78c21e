"""Pydantic configuration schema for MailPilot.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from mailpilot.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

DEFAULT_SUGGESTION_THRESHOLDS: dict[str, int] = {
    "delete": 98,
    "move": 85,
    "archive": 85,
    "markRead": 80,
}


class AuthConfig(BaseModel):
    """Azure AD app-only authentication configuration."""

    client_id: str = Field(description="Azure AD Application (client) ID")
    tenant_id: str = Field(description="Azure AD Directory (tenant) ID")
    client_secret_env: str = Field(
        default="MAILPILOT_CLIENT_SECRET",
        description="Environment variable holding the client secret",
    )
    scopes: list[str] = Field(
        default=["https://graph.microsoft.com/.default"],
        description="Scopes requested with the client credentials grant",
    )

    @field_validator("tenant_id")
    @classmethod
    def validate_tenant_id(cls, v: str) -> str:
        """App-only tokens need a concrete tenant."""
        if v.strip().lower() in {"", "common", "consumers", "organizations"}:
            raise ValueError(
                "tenant_id must be a concrete tenant ID for app-only access, "
                "not 'common', 'consumers' or 'organizations'"
            )
        return v


class DatabaseConfig(BaseModel):
    """SQLite database location."""

    path: str = Field(
        default="data/mailpilot.db",
        description="Path to the SQLite database file",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure the database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class AnalysisConfig(BaseModel):
    """Pattern detection and suggestion configuration."""

    observation_window_days: int = Field(
        default=90,
        ge=1,
        le=365,
        description="How far back event aggregation looks",
    )
    recency_window_days: int = Field(
        default=7,
        ge=1,
        le=30,
        description="Trailing window used for the recency factor",
    )
    min_observation_days: int = Field(
        default=14,
        ge=0,
        le=90,
        description="Minimum days a pattern must be observed before it is suggested",
    )
    rejection_cooldown_days: int = Field(
        default=30,
        ge=0,
        le=365,
        description="Days a rejected pattern is suppressed from re-detection",
    )
    min_sender_events: int = Field(
        default=10,
        ge=1,
        description="Minimum events per sender for sender-level aggregation",
    )
    min_folder_moves: int = Field(
        default=5,
        ge=1,
        description="Minimum moves from one sender to one folder for routing patterns",
    )
    max_evidence_items: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Number of recent events kept as evidence on a pattern",
    )
    sender_confidence_floor: int = Field(
        default=50,
        ge=0,
        le=100,
        description="Sender-level patterns below this confidence are not persisted",
    )
    thresholds: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_SUGGESTION_THRESHOLDS),
        description="Per-action confidence threshold for suggesting a pattern",
    )
    interval_hours: int = Field(
        default=24,
        ge=1,
        le=168,
        description="How often scheduled analysis runs over all mailboxes",
    )

    @field_validator("thresholds")
    @classmethod
    def validate_thresholds(cls, v: dict[str, int]) -> dict[str, int]:
        """Thresholds are confidence percentages."""
        for action_type, threshold in v.items():
            if not 0 <= threshold <= 100:
                raise ValueError(
                    f"Threshold for '{action_type}' must be between 0 and 100, got {threshold}"
                )
        return v


class StagingConfig(BaseModel):
    """Staged action safety pipeline configuration."""

    grace_period_hours: int = Field(
        default=24,
        ge=1,
        le=168,
        description="How long destructive actions wait before execution",
    )
    cleanup_buffer_days: int = Field(
        default=7,
        ge=0,
        le=90,
        description="Retention after expiry before external cleanup may remove records",
    )
    sweep_batch_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Maximum expired items processed per sweep",
    )
    sweep_chunk_size: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Items executed concurrently against the mail provider",
    )
    sweep_interval_minutes: int = Field(
        default=30,
        ge=1,
        le=1440,
        description="How often the expiry sweep runs",
    )
    holding_folder_name: str = Field(
        default="MailPilot Staging",
        min_length=1,
        description="Display name of the holding folder for staged messages",
    )


class UndoConfig(BaseModel):
    """Undo window configuration."""

    window_hours: int = Field(
        default=48,
        ge=1,
        le=720,
        description="How long an automated action can be undone",
    )


class LoggingConfig(BaseModel):
    """Logging output configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    json_output: bool = Field(
        default=True,
        description="JSON logs for the service, console logs otherwise",
    )


class AppConfig(BaseModel):
    """Root configuration model."""

    schema_version: int = Field(default=CURRENT_SCHEMA_VERSION, ge=1)
    auth: AuthConfig
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    staging: StagingConfig = Field(default_factory=StagingConfig)
    undo: UndoConfig = Field(default_factory=UndoConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

"""Pydantic configuration schema for inbox-actions.

This module defines the configuration schema that mirrors config.yaml. The
file is validated against these models when it is loaded.

Usage:
    from inbox_actions.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class DatabaseConfig(BaseModel):
    """SQLite database location."""

    path: str = Field(
        default="data/inbox_actions.db",
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


class SyncConfig(BaseModel):
    """Mailbox synchronization limits."""

    first_sync_lookback_hours: int = Field(
        default=24,
        ge=1,
        le=720,
        description="How far back the first sync of a mailbox looks (hours)",
    )
    max_emails_to_sync: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Max messages listed per sync pass in the batch run",
    )
    max_emails_to_analyze: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Max EXTRACTED messages analyzed per batch run",
    )
    default_folder: str = Field(
        default="INBOX",
        description="Folder synced when none is given (IMAP name; Graph uses 'inbox')",
    )


class RetryConfig(BaseModel):
    """Retry behaviour for throttled and transient failures."""

    max_attempts: int = Field(default=3, ge=1, le=10, description="Total attempts per call")
    backoff_delays: list[float] = Field(
        default=[1.0, 2.0, 4.0],
        description="Delay (seconds) before each retry; the last value repeats",
    )
    max_retry_after_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Cap on server-provided Retry-After values",
    )

    @field_validator("backoff_delays")
    @classmethod
    def validate_delays(cls, v: list[float]) -> list[float]:
        if not v:
            raise ValueError("backoff_delays needs at least one value")
        if any(delay < 0 for delay in v):
            raise ValueError("backoff_delays cannot contain negative values")
        return v


class RateLimitConfig(BaseModel):
    """Client-side token buckets per HTTP backend."""

    gmail_rate: float = Field(default=10.0, gt=0, description="Gmail requests per second")
    gmail_capacity: int = Field(default=10, ge=1, description="Gmail burst capacity")
    graph_rate: float = Field(default=10.0, gt=0, description="Graph requests per second")
    graph_capacity: int = Field(default=10, ge=1, description="Graph burst capacity")


class GoogleOAuthConfig(BaseModel):
    """Google OAuth client used to refresh Gmail (and Gmail IMAP) tokens."""

    client_id: str = Field(default="", description="Google OAuth client ID")
    client_secret_env: str = Field(
        default="GOOGLE_CLIENT_SECRET",
        description="Environment variable holding the client secret",
    )
    token_url: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="Token endpoint used for refresh_token grants",
    )


class MicrosoftOAuthConfig(BaseModel):
    """Azure AD app used to refresh Graph (and Outlook IMAP) tokens."""

    client_id: str = Field(default="", description="Azure AD Application (client) ID")
    client_secret_env: str = Field(
        default="MICROSOFT_CLIENT_SECRET",
        description="Environment variable holding the client secret",
    )
    tenant_id: str = Field(
        default="common",
        description="Azure AD Directory (tenant) ID or 'common' for personal accounts",
    )
    scopes: list[str] = Field(
        default=["Mail.Read", "User.Read"],
        description="Microsoft Graph API permission scopes",
    )


class OAuthConfig(BaseModel):
    """OAuth token lifecycle settings."""

    google: GoogleOAuthConfig = Field(default_factory=GoogleOAuthConfig)
    microsoft: MicrosoftOAuthConfig = Field(default_factory=MicrosoftOAuthConfig)
    refresh_margin_seconds: int = Field(
        default=300,
        ge=0,
        le=3600,
        description="Refresh access tokens this long before they expire",
    )


class ImapConfig(BaseModel):
    """IMAP connection settings."""

    timeout_seconds: float = Field(default=30.0, gt=0, description="Socket timeout")
    fetch_batch_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="UIDs per header FETCH command",
    )


class ExtractionConfig(BaseModel):
    """Deterministic action extraction."""

    locale: Literal["en", "fr"] = Field(
        default="en",
        description="Rule set used to recognise requests and dates",
    )
    default_due_hour: int = Field(
        default=18,
        ge=0,
        le=23,
        description="Hour assigned to date-only deadlines",
    )
    due_date_window_chars: int = Field(
        default=200,
        ge=0,
        le=2000,
        description="How much of the following sentence is searched for a deadline",
    )


class LoggingConfig(BaseModel):
    """Log output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    json_output: bool = Field(
        default=False,
        description="JSON lines instead of console output, for schedulers collecting logs",
    )


class AppConfig(BaseModel):
    """Root configuration schema for inbox-actions."""

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )
    timezone: str = Field(
        default="UTC",
        description="Timezone used to resolve relative deadlines",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    imap: ImapConfig = Field(default_factory=ImapConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone '{v}'") from e
        return v

"""
Configuration Management for My Pocket

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist and
ensures all required configuration is validated at startup.

Each section has its own environment prefix so a deployment can configure
the remote backend, the local cache and the sync engine independently.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets remote backend configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )

    # Sheet names within the spreadsheet
    entities_sheet_name: str = Field(
        default="Entities",
        description="Name of the sheet holding the current value of every entity"
    )
    changes_sheet_name: str = Field(
        default="Changes",
        description="Name of the append-only sheet the change stream is read from"
    )
    poll_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        description="How often the change stream polls the Changes sheet"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class SyncSettings(BaseSettings):
    """Push queue retry and auto-sync configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MY_POCKET_SYNC_",
        extra="ignore"
    )

    push_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per push before the workspace is marked degraded"
    )
    backoff_multiplier: float = Field(
        default=1.0,
        ge=0.0,
        description="Exponential backoff multiplier between push attempts"
    )
    backoff_min_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Lower bound of the wait between push attempts"
    )
    backoff_max_seconds: float = Field(
        default=10.0,
        ge=0.0,
        description="Upper bound of the wait between push attempts"
    )
    auto_sync_interval_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Periodic retry of queued pushes (0 disables the loop)"
    )

    @model_validator(mode='after')
    def validate_backoff_bounds(self) -> 'SyncSettings':
        if self.backoff_max_seconds < self.backoff_min_seconds:
            raise ValueError("backoff_max_seconds cannot be lower than backoff_min_seconds")
        return self


class CacheSettings(BaseSettings):
    """Local cache configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MY_POCKET_CACHE_",
        extra="ignore"
    )

    database_path: str = Field(
        default="my_pocket.db",
        description="SQLite file holding the local replica and the push queue"
    )


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        description="Minimum level for operational logs"
    )

    # Which remote backend the wiring factory builds
    remote_backend: Literal["sheets", "memory", "none"] = Field(
        default="sheets",
        description="Remote source of truth (none = offline only)"
    )

    diagnostics_buffer_size: int = Field(
        default=200,
        ge=10,
        le=10000,
        description="How many recent diagnostics the audit logger keeps in memory"
    )

    @field_validator('log_level')
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Load all sub-settings
    # Note: These are loaded lazily to allow partial configuration

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def cache(self) -> CacheSettings:
        return CacheSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("google_sheets", "sync", "cache", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results

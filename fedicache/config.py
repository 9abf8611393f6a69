"""Configuration management for fedicache.

This module provides centralized configuration using Pydantic Settings.
Every field can be set through an environment variable with the
``FEDICACHE_`` prefix or through a ``.env`` file.

Environment Profiles:
    - DEVELOPMENT: Verbose logging, human-readable output
    - PRODUCTION: JSON logs, file logging
    - TESTING: In-memory stores, minimal logging, no log files
    - STAGING: Production-like with INFO logging

Example:
    >>> from fedicache.config import settings
    >>> settings.store_path("6f1c...")
    PosixPath('/home/me/.local/share/fedicache/6f1c....sqlite')
"""

from enum import StrEnum
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    """Runtime environment with specific behavior profiles."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"
    STAGING = "staging"


class Settings(BaseSettings):
    """Application settings with environment variable support.

    Attributes:
        environment: Runtime profile
        data_dir: Application-private directory holding one store per identity
        instance_url: Base URL of the Mastodon-compatible instance
        access_token: OAuth bearer token used by the API client
        page_size: Number of statuses requested per timeline page
        max_concurrency: Maximum concurrent API requests
        retention_count: Statuses kept at and below the home last-read cursor
        use_home_timeline_last_read_id: Bounded retention mode flag
        filter_sweep_interval_seconds: Period of the expired-filter sweep
        instance_filter_url: Location of the Bloom-encoded instance denylist
        in_memory: Open stores in memory instead of on disk
    """

    model_config = SettingsConfigDict(
        env_prefix="FEDICACHE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Runtime environment (development, production, testing, staging)",
    )

    # API Configuration
    instance_url: Optional[str] = Field(
        None,
        description="Base URL of the instance, e.g. https://mastodon.social",
    )
    access_token: Optional[str] = Field(
        None,
        description="OAuth bearer token for the instance API",
    )
    instance_filter_url: str = Field(
        "https://filter.metabolist.com/filter.json",
        description="URL of the Bloom-filter encoded instance denylist",
    )
    request_timeout: float = Field(
        30.0,
        gt=0,
        description="Overall HTTP request timeout (seconds)",
    )

    # Storage Configuration
    data_dir: Path = Field(
        Path("./data"),
        description="Directory holding one store file per identity",
    )
    in_memory: bool = Field(
        default=False,
        description="Open stores in memory (nothing persisted)",
    )

    # Operational Parameters
    page_size: int = Field(
        40,
        ge=1,
        le=80,
        description="Number of statuses per timeline page",
    )
    max_concurrency: int = Field(
        3,
        ge=1,
        le=10,
        description="Maximum concurrent API requests",
    )
    retention_count: int = Field(
        40,
        ge=1,
        description="Statuses retained from the home last-read cursor downwards",
    )
    use_home_timeline_last_read_id: bool = Field(
        default=True,
        description="Bound the home timeline around the last-read cursor at open",
    )
    filter_sweep_interval_seconds: float = Field(
        60.0,
        gt=0,
        description="Seconds between purges of expired content filters",
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_to_file: bool = Field(
        default=False,
        description="Enable file logging in addition to console",
    )
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format (recommended for production)",
    )

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_data_dir(cls, v: str | Path) -> Path:
        """Expand and resolve data directory path."""
        return Path(v).expanduser().resolve()

    @field_validator("instance_url")
    @classmethod
    def strip_instance_url(cls, v: Optional[str]) -> Optional[str]:
        """Normalize the instance URL (scheme required, no trailing slash)."""
        if v is None:
            return None
        if not v.startswith(("http://", "https://")):
            raise ValueError("instance_url must start with http:// or https://")
        return v.rstrip("/")

    @model_validator(mode="after")
    def apply_environment_profile(self) -> "Settings":
        """Apply environment-specific defaults.

        Profiles:
            - PRODUCTION: INFO logging (unless DEBUG was asked for), JSON logs, log file
            - DEVELOPMENT: DEBUG logging, human-readable
            - TESTING: In-memory stores, ERROR logging, no file logging
            - STAGING: INFO logging, JSON logs
        """
        if self.environment == Environment.PRODUCTION:
            self.log_json = True
            self.log_to_file = True

        elif self.environment == Environment.DEVELOPMENT:
            self.log_level = "DEBUG"
            self.log_json = False

        elif self.environment == Environment.TESTING:
            self.in_memory = True
            self.max_concurrency = 1
            self.log_level = "ERROR"
            self.log_to_file = False
            self.log_json = False

        elif self.environment == Environment.STAGING:
            self.log_level = "INFO"
            self.log_json = True

        return self

    def store_path(self, identity_id: str) -> Path:
        """Path of the store file owned by ``identity_id``."""
        return self.data_dir / f"{identity_id}.sqlite"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        """Check if running in testing environment."""
        return self.environment == Environment.TESTING

    def redact_token(self, token: Optional[str] = None) -> str:
        """Redact sensitive token for logging.

        Args:
            token: Token to redact (defaults to access_token)

        Returns:
            Redacted token string
        """
        token = token or self.access_token
        if not token:
            return "None"
        return f"{token[:8]}...{token[-4:]}" if len(token) > 12 else "***"


def get_settings() -> Settings:
    """Get a freshly loaded settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()

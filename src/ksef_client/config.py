"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables (prefix KSEF_)
  - Fall back to .env file
  - Validate types and constraints at startup
  - Keep secrets out of source control and out of repr

Only AppSettings is a BaseSettings instance. Sub-settings are plain BaseModel
classes populated via env_nested_delimiter="__", so KSEF_NETWORK__MAX_RETRIES
maps to network.max_retries and KSEF_AUTH__NIP maps to auth.nip.

The settings object is passed explicitly to the components that need it;
there is no process-wide default.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the .env file relative to the project root (two levels above this file),
# so settings load correctly regardless of the working directory at runtime.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"


class NetworkSettings(BaseModel):
    """
    HTTP client configuration: target host, retry count and per-operation timeouts.

    Timeouts are per attempt; the worst-case duration of one logical call is
    roughly (max_retries + 1) * timeout plus the backoff delays.
    """

    host: str = Field(default="api.ksef.mf.gov.pl", description="KSeF API host (no scheme)")
    max_retries: int = Field(default=3, ge=0, le=10, description="Retries on 5xx/transport errors")
    open_timeout: float = Field(default=10, gt=0, description="Connect timeout in seconds")
    read_timeout: float = Field(default=15, gt=0, description="Read timeout in seconds")
    write_timeout: float = Field(default=10, gt=0, description="Write timeout in seconds")
    retry_backoff_base: float = Field(
        default=0.2, ge=0, description="Backoff base; delay before retry i is base * 2**i"
    )

    @field_validator("host")
    @classmethod
    def strip_scheme(cls, value: str) -> str:
        """Accept 'https://host/' as well as 'host'."""
        host = value.strip().removeprefix("https://").removeprefix("http://").rstrip("/")
        if not host:
            raise ValueError("host must not be empty")
        return host


class AuthSettings(BaseModel):
    """
    Taxpayer identity and status-polling configuration.

    ``nip`` and ``token`` are validated again when Credentials are built;
    they are optional here so the settings can load without them.
    """

    nip: str = Field(default="", description="Taxpayer identifier (NIP)")
    token: SecretStr = Field(default=SecretStr(""), description="Pre-shared KSeF token")
    poll_attempts: int = Field(default=10, ge=1, description="Auth status polls before giving up")
    poll_interval: float = Field(default=1.0, ge=0, description="Seconds between status polls")


class AppSettings(BaseSettings):
    """
    Root application settings — aggregates all sub-settings.

    Load order (highest priority first):
      1. Environment variables
      2. .env file
      3. Default values
    """

    model_config = SettingsConfigDict(
        env_prefix="KSEF_",
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    network: NetworkSettings = Field(default_factory=lambda: NetworkSettings())
    auth: AuthSettings = Field(default_factory=lambda: AuthSettings())

    api_log_capacity: int = Field(default=50, ge=1)
    invoice_window_days: int = Field(default=30, ge=1)
    subject_type: str = Field(default="seller")
    log_level: str = Field(default="INFO")

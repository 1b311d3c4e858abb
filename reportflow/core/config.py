"""Application configuration settings.

This module defines the orchestrator-wide settings using Pydantic's BaseSettings.
It allows for loading configurations from environment variables and .env files,
providing type validation and default values.
"""

from pathlib import Path

from pydantic import Field
from pydantic import field_validator
from pydantic import model_validator
from pydantic_settings import BaseSettings

# Default list of CORS allowed origins
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8000",
    "https://localhost:3000",
    "https://localhost:8000",
]


class Settings(BaseSettings):
    """Manages orchestrator settings, loading them from environment variables or an .env file.

    Attributes:
        default_timeout: Hard timeout in seconds applied when a caller does not pass one.
        warning_threshold: Seconds after which a "taking longer than expected" warning fires.
        progress_update_interval: Seconds between two progress ticks of a running tracker.
        grace_period: Seconds a finished tracker stays queryable before the registry evicts it.
        retry_max_attempts: Default number of attempts made by the retry executor.
        retry_base_delay: Delay in seconds before the second attempt.
        retry_backoff_multiplier: Growth factor applied to the delay after each attempt.
        retry_max_delay: Upper bound in seconds for a single backoff delay.
        retry_jitter_ratio: Fraction of the delay randomly added or removed.
        stage_profiles_path: Optional JSON file with extra or overriding stage profiles.
        log_level: Level of the orchestrator loggers (retries, timers, registry).
        api_key: API key protecting the monitoring endpoints.
        cors_allowed_origins: List of allowed origins for CORS.
    """

    default_timeout: float = Field(default=60.0, gt=0)
    warning_threshold: float = Field(default=45.0, gt=0)
    progress_update_interval: float = Field(default=1.0, gt=0)
    grace_period: float = Field(default=5.0, ge=0)

    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1)
    retry_max_delay: float = Field(default=60.0, ge=0)
    retry_jitter_ratio: float = Field(default=0.1, ge=0, le=1)

    stage_profiles_path: Path | None = Field(default=None)

    log_level: str = Field(default="INFO")

    api_key: str | None = Field(default=None)

    cors_allowed_origins: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CORS_ORIGINS),  # Use a copy of the default list
    )

    model_config = {
        "env_file": ".env",
        "env_prefix": "",  # No prefix for environment variables
        "extra": "ignore",  # Ignore extra fields
    }

    @field_validator("cors_allowed_origins", mode="before")  # type: ignore
    @classmethod
    def assemble_cors_origins(cls, v: str | list[str] | None) -> list[str]:
        """Assembles the list of CORS allowed origins.

        If 'v' is a string, it splits it by commas. If 'v' is already a list,
        it's used directly. Otherwise, returns the default list of origins.
        """
        if isinstance(v, str) and v:
            return [origin.strip() for origin in v.split(",")]
        elif isinstance(v, list):
            return v
        return list(DEFAULT_CORS_ORIGINS)

    @model_validator(mode="after")
    def check_warning_before_timeout(self) -> "Settings":
        if self.warning_threshold >= self.default_timeout:
            raise ValueError("warning_threshold must be lower than default_timeout")
        return self


settings = Settings()

"""
Configuration management for the document verification poller.

This module handles environment variables, settings validation, and configuration
management using Pydantic Settings for type safety and validation.
"""

from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class ServerConfig(BaseModel):
    """Web server configuration settings."""

    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    debug: bool = Field(default=False, description="Enable debug mode")


class PollingConfig(BaseModel):
    """Retry and backoff parameters for a single polling session."""

    initial_delay_ms: float = Field(
        default=1000, ge=0, description="Delay before the first status check"
    )
    retry_intervals_ms: list[float] = Field(
        default=[2000, 5000, 10000, 30000],
        description="Base delays for successive retries (last one repeats)",
    )
    max_retries: int = Field(default=10, ge=0, description="Maximum retry count")
    backoff_multiplier: float = Field(
        default=1.5, ge=1.0, description="Exponential backoff multiplier"
    )
    timeout_ms: float = Field(
        default=300000, gt=0, description="Absolute polling timeout (5 minutes)"
    )
    jitter_max_ms: float = Field(
        default=1000, ge=0, description="Upper bound of the random jitter"
    )

    @field_validator("retry_intervals_ms")
    @classmethod
    def validate_retry_intervals(cls, v: list[float]) -> list[float]:
        """Require at least one non-negative interval."""
        if not v:
            raise ValueError("retry_intervals_ms must not be empty")
        if any(interval < 0 for interval in v):
            raise ValueError("retry_intervals_ms must not contain negative values")
        return v


class StateConfig(BaseModel):
    """Durable polling state configuration."""

    backend: str = Field(default="memory", description="State backend mode")
    directory: str = Field(
        default="./.docverify-state", description="Directory for the file backend"
    )


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Document verification API
    api_base_url: str = Field(
        default="http://localhost:5000", description="Document verification API URL"
    )
    request_timeout_seconds: float = Field(
        default=30.0, description="HTTP request timeout in seconds"
    )

    # Server configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Logging configuration
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format")

    # State persistence
    state_backend: str = Field(
        default="memory", description="Polling state backend: memory or file"
    )
    state_directory: str = Field(
        default="./.docverify-state", description="Directory used by the file backend"
    )

    # Polling configuration
    polling_initial_delay_ms: float = Field(
        default=1000, description="Delay before the first status check"
    )
    polling_retry_intervals_ms: str | list[float] = Field(
        default="2000,5000,10000,30000",
        description="Retry intervals in milliseconds (comma-separated)",
    )
    polling_max_retries: int = Field(default=10, description="Maximum retries")
    polling_backoff_multiplier: float = Field(
        default=1.5, description="Exponential backoff multiplier"
    )
    polling_timeout_ms: float = Field(
        default=300000, description="Absolute polling timeout in milliseconds"
    )
    polling_jitter_max_ms: float = Field(
        default=1000, description="Maximum random jitter in milliseconds"
    )

    # Security
    allowed_origins: str | list[str] = Field(
        default="http://localhost:4200",
        description="Allowed CORS origins (comma-separated)",
    )
    enable_cors: bool = Field(default=True, description="Enable CORS")

    @field_validator("polling_retry_intervals_ms", mode="before")
    @classmethod
    def parse_retry_intervals(cls, v: Any) -> list[float]:
        """Parse retry intervals from comma-separated string or list."""
        if isinstance(v, str):
            return [float(item.strip()) for item in v.split(",") if item.strip()]
        elif isinstance(v, list):
            return [float(item) for item in v]
        else:
            error_msg = (
                f"polling_retry_intervals_ms must be a string or list, got {type(v)}"
            )
            raise ValueError(error_msg)

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, v: Any) -> list[str]:
        """Parse allowed origins from comma-separated string or list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        elif isinstance(v, list):
            return v
        else:
            error_msg = f"allowed_origins must be a string or list, got {type(v)}"
            raise ValueError(error_msg)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format."""
        if v not in {"json", "console"}:
            raise ValueError(f"Invalid log format: {v}")
        return v

    @field_validator("state_backend")
    @classmethod
    def validate_state_backend(cls, v: str) -> str:
        """Validate state backend mode."""
        allowed_backends = {"memory", "file"}
        if v.lower() not in allowed_backends:
            raise ValueError(f"Invalid state backend: {v}")
        return v.lower()

    @property
    def server_config(self) -> ServerConfig:
        """Get server configuration."""
        return ServerConfig(host=self.host, port=self.port, debug=self.debug)

    @property
    def state_config(self) -> StateConfig:
        """Get state persistence configuration."""
        return StateConfig(backend=self.state_backend, directory=self.state_directory)

    @property
    def polling_config(self) -> PollingConfig:
        """Get default polling configuration."""
        intervals = self.polling_retry_intervals_ms
        if isinstance(intervals, str):
            intervals = [
                float(item.strip()) for item in intervals.split(",") if item.strip()
            ]
        try:
            return PollingConfig(
                initial_delay_ms=self.polling_initial_delay_ms,
                retry_intervals_ms=intervals,
                max_retries=self.polling_max_retries,
                backoff_multiplier=self.polling_backoff_multiplier,
                timeout_ms=self.polling_timeout_ms,
                jitter_max_ms=self.polling_jitter_max_ms,
            )
        except ValidationError as e:
            raise ConfigurationError(f"Invalid polling configuration: {e}") from e


# Global settings instance - initialized lazily to avoid import-time errors
_settings_instance = None


def get_settings() -> Settings:
    """Get the global settings instance, creating it if necessary."""
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance


def __getattr__(name: str) -> Any:
    """Allow module-level access to settings attributes."""
    if name == "settings":
        return get_settings()
    raise AttributeError(f"module '{__name__}' has no attribute '{name}'")

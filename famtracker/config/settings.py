"""
Configuration management for the FamTracker backend.

This module provides centralized configuration loading and validation using
Pydantic settings. Secrets are loaded from environment variables or .env files,
and environment-specific files (.env.development, .env.staging,
.env.production) override the base file.
"""

import os
from enum import Enum
from pathlib import Path
from typing import Optional, List, Tuple

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def _detect_environment() -> Environment:
    """
    Detect the current environment from the ENVIRONMENT variable.

    Returns:
        Environment: The detected environment, defaults to DEVELOPMENT if not set.
    """
    env_value = os.environ.get("ENVIRONMENT", "development").lower().strip()
    try:
        return Environment(env_value)
    except ValueError:
        return Environment.DEVELOPMENT


def _get_env_files(environment: Environment) -> Tuple[str, ...]:
    """
    Get the .env files to load for the given environment.

    The base .env file is loaded first, then the environment-specific file,
    so later files override earlier ones.
    """
    env_file_map = {
        Environment.DEVELOPMENT: ".env.development",
        Environment.STAGING: ".env.staging",
        Environment.PRODUCTION: ".env.production",
    }
    env_specific_file = env_file_map.get(environment, ".env.development")
    return (".env", env_specific_file)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Only the Elasticsearch connection is required; every tuning knob of the
    road matcher, fan-out and query windows has a default.
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment (development, staging, production)"
    )

    # Elasticsearch Configuration
    elastic_endpoint: str = Field(
        ...,
        description="Elasticsearch endpoint URL"
    )
    elastic_api_key: str = Field(
        ...,
        description="Elasticsearch API key for authentication"
    )
    elastic_request_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=120,
        description="Per-request timeout for Elasticsearch calls"
    )

    # Road matching
    road_match_radius_m: float = Field(
        default=20.0,
        gt=0,
        le=500,
        description="Maximum geodesic distance between a report and its matched road"
    )
    road_match_timeout_seconds: float = Field(
        default=0.5,
        gt=0,
        le=10,
        description="Time budget for a road match before the report proceeds unmatched"
    )
    road_index_ready_timeout_seconds: float = Field(
        default=2.0,
        ge=0,
        le=60,
        description="How long a query waits for the initial road index load"
    )
    road_refresh_interval_seconds: int = Field(
        default=3600,
        ge=60,
        description="Interval between wholesale rebuilds of the road index"
    )

    # Query windows
    current_position_window_minutes: int = Field(
        default=5,
        ge=1,
        le=1440,
        description="Recency window for current family positions"
    )
    stats_window_hours: int = Field(
        default=24,
        ge=1,
        le=24 * 31,
        description="Trailing window for speed statistics"
    )
    history_default_limit: int = Field(
        default=100,
        ge=1,
        description="Number of history reports returned when no limit is given"
    )
    history_max_limit: int = Field(
        default=1000,
        ge=1,
        le=10000,
        description="Upper bound on history reports per request"
    )

    # Live fan-out
    broadcast_buffer_size: int = Field(
        default=256,
        ge=1,
        le=100000,
        description="Undelivered events kept per group channel before the oldest is dropped"
    )

    # Rate Limiting Configuration
    rate_limit_requests_per_minute: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Maximum API requests per minute per IP"
    )
    rate_limit_location_requests_per_minute: int = Field(
        default=120,
        ge=1,
        le=10000,
        description="Maximum position submissions per minute per IP"
    )

    # Observability Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    otel_endpoint: Optional[str] = Field(
        default=None,
        description="OpenTelemetry collector endpoint URL"
    )
    otel_service_name: str = Field(
        default="famtracker-backend",
        description="Service name for OpenTelemetry traces"
    )

    # CORS Configuration
    cors_origins: List[str] = Field(
        default=["http://localhost:8081"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("elastic_endpoint")
    @classmethod
    def validate_elastic_endpoint(cls, v: str) -> str:
        """Validate that elastic_endpoint is not empty and is a valid URL format."""
        if not v or not v.strip():
            raise ValueError("elastic_endpoint cannot be empty")
        v = v.strip().strip('"')
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError("elastic_endpoint must be a valid HTTP/HTTPS URL")
        return v

    @field_validator("elastic_api_key")
    @classmethod
    def validate_elastic_api_key(cls, v: str) -> str:
        """Validate that elastic_api_key is not empty."""
        if not v or not v.strip():
            raise ValueError("elastic_api_key cannot be empty")
        return v.strip().strip('"')

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate that log_level is a valid logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.strip().upper()
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v

    @field_validator("cors_origins")
    @classmethod
    def validate_cors_origins(cls, v: List[str]) -> List[str]:
        """Validate CORS origins format and reject wildcard patterns."""
        validated_origins = []
        for origin in v:
            origin = origin.strip()
            if "*" in origin:
                raise ValueError(
                    f"Wildcard patterns are not allowed in CORS origins: {origin}. "
                    "Specify exact client origins."
                )
            if not (origin.startswith("http://") or origin.startswith("https://")):
                raise ValueError(
                    f"Invalid CORS origin format: {origin}. "
                    "Must start with http:// or https://"
                )
            validated_origins.append(origin)
        return validated_origins

    @model_validator(mode="after")
    def validate_history_limits(self) -> "Settings":
        """The default history page cannot exceed the maximum page."""
        if self.history_default_limit > self.history_max_limit:
            raise ValueError(
                "history_default_limit cannot exceed history_max_limit"
            )
        return self


class ConfigurationError(Exception):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None,
                 invalid_fields: Optional[dict] = None):
        self.message = message
        self.missing_fields = missing_fields or []
        self.invalid_fields = invalid_fields or {}
        super().__init__(self.format_error_message())

    def format_error_message(self) -> str:
        """Format a descriptive error message listing all issues."""
        parts = [self.message]

        if self.missing_fields:
            parts.append(f"\nMissing required fields: {', '.join(self.missing_fields)}")

        if self.invalid_fields:
            invalid_parts = [f"  - {field}: {error}" for field, error in self.invalid_fields.items()]
            parts.append("\nInvalid field values:\n" + "\n".join(invalid_parts))

        return "".join(parts)


def create_settings_for_environment(environment: Optional[Environment] = None) -> Settings:
    """
    Create Settings for a specific environment.

    Args:
        environment: Optional environment override. If not provided, detected from
                    the ENVIRONMENT variable.

    Returns:
        Settings: Validated settings for the specified environment.

    Raises:
        ConfigurationError: If required settings are missing or invalid.
    """
    if environment is None:
        environment = _detect_environment()

    env_files = _get_env_files(environment)
    existing_env_files = [env_file for env_file in env_files if Path(env_file).exists()]
    if not existing_env_files:
        existing_env_files = list(env_files)

    try:
        class EnvironmentSettings(Settings):
            model_config = SettingsConfigDict(
                env_file=tuple(existing_env_files),
                env_file_encoding="utf-8",
                case_sensitive=False,
                extra="ignore"
            )

        return EnvironmentSettings()
    except Exception as e:
        missing_fields = []
        invalid_fields = {}

        if hasattr(e, 'errors'):
            for error in e.errors():
                field_name = '.'.join(str(loc) for loc in error.get('loc', []))
                error_type = error.get('type', '')
                error_msg = error.get('msg', str(error))

                if error_type == 'missing':
                    missing_fields.append(field_name)
                else:
                    invalid_fields[field_name] = error_msg

        raise ConfigurationError(
            f"Failed to load configuration for environment '{environment.value}'",
            missing_fields=missing_fields,
            invalid_fields=invalid_fields
        ) from e


_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the application settings, loading them on first use.

    Raises:
        ConfigurationError: If required settings are missing or invalid.
    """
    global _settings_cache

    if _settings_cache is None:
        _settings_cache = create_settings_for_environment()

    return _settings_cache


def clear_settings_cache() -> None:
    """Clear the settings cache so tests can reload with new variables."""
    global _settings_cache
    _settings_cache = None


def validate_startup(settings: Optional[Settings] = None) -> None:
    """
    Validate cross-field settings at application startup.

    Args:
        settings: Settings to check; loaded with get_settings() when omitted.

    Raises:
        ConfigurationError: If any settings are inconsistent.
    """
    settings = settings or get_settings()
    validation_errors = {}

    if settings.road_match_timeout_seconds > settings.elastic_request_timeout_seconds:
        validation_errors["road_match_timeout_seconds"] = (
            "Road match budget must not exceed the storage request timeout"
        )

    # Production must name its client origins explicitly
    if settings.environment == Environment.PRODUCTION:
        localhost_only = all(
            "localhost" in origin or "127.0.0.1" in origin
            for origin in settings.cors_origins
        )
        if localhost_only:
            validation_errors["cors_origins"] = (
                "Production environment requires non-localhost CORS origins."
            )

    if validation_errors:
        raise ConfigurationError(
            "Configuration validation failed during startup",
            invalid_fields=validation_errors
        )

"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Production may inject everything via env vars only
_env_file = str(_env_path) if _env_path.is_file() else None

# Nested BaseSettings don't inherit env_file, so populate os.environ up front
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_app_settings() -> "AppSettings":
    return AppSettings()


def _build_redis_settings() -> "RedisSettings":
    return RedisSettings()


def _build_log_settings() -> "LogSettings":
    return LogSettings()


class AppSettings(BaseSettings):
    """Application-wide configuration, mostly the rate limiting policy."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    host: str = Field(
        "0.0.0.0",
        description="Interface the HTTP server binds to",
    )
    port: int = Field(
        5001,
        description="Port the HTTP server listens on",
        ge=1,
        le=65535,
    )

    rate_limit_enabled: bool = Field(
        True,
        description="Gate every request through the shared rate limiter",
    )
    rate_limit_requests: int = Field(
        1000,
        description="Maximum number of requests allowed per window (per client)",
        ge=1,
    )
    rate_limit_window_seconds: int = Field(
        60,
        description="Rate limit window size in seconds",
        ge=1,
    )
    rate_limit_algorithm: Literal["sliding", "fixed"] = Field(
        "sliding",
        description="Window semantics: sliding log or fixed clock-aligned buckets",
    )
    rate_limit_backend: str = Field(
        "memory",
        description="Counter backend: 'memory' (per process) or 'redis' (shared)",
    )
    rate_limit_timeout_seconds: float = Field(
        2.0,
        description="Upper bound for a single quota check against the backend",
        gt=0,
    )
    rate_limit_fallback_identifier: str = Field(
        "anonymous",
        description="Identifier used when the request carries no usable address",
        min_length=1,
    )
    rate_limit_trust_proxy_headers: bool = Field(
        False,
        description="Use the first X-Forwarded-For entry as the client address",
    )
    rate_limit_include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers when throttling",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class RedisSettings(BaseSettings):
    """Connection settings for the shared counter store.

    Any Redis-protocol endpoint works, including Upstash databases through
    their ``rediss://default:<token>@<host>:<port>`` URL.
    """

    url: str | None = Field(
        None,
        description="Redis connection URL (required when the backend is 'redis')",
    )
    key_prefix: str = Field(
        "ratelimit",
        description="Namespace prepended to every limiter key",
    )
    socket_timeout_seconds: float = Field(
        5.0,
        description="Socket connect/read timeout for the Redis client",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: Literal["json", "plain"] = Field(
        "json",
        description="Log line format",
    )
    output: Literal["stdout", "file"] = Field(
        "stdout",
        description="Where log lines are written",
    )
    file_path: str | None = Field(
        None,
        description="Log file path when output is 'file'",
    )
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(
        5,
        description="Number of rotated log files to keep",
        ge=0,
    )
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to accept and echo the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are invalid.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    redis: RedisSettings = Field(default_factory=_build_redis_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance, composed from domain-specific settings
settings = Settings()

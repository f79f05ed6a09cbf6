"""
Configuration management for the commit tracker.

This module provides centralized configuration with:
- Environment and .env file loading (nested keys use ``__``)
- Type validation and defaults
- The tracking surface consumed by the engine
- Watcher, git, state persistence and service settings
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
from pydantic_settings import BaseSettings as PydanticBaseSettings

from shared.models import DEFAULT_LOG_FILE, TrackerConfig


class TrackingSettings(BaseSettings):
    """Where and what to log."""

    log_file_path: str = Field(default="", description="Tracking repository directory")
    log_file: str = Field(default=DEFAULT_LOG_FILE, description="Tracking log file name")
    excluded_branches: List[str] = Field(default_factory=list, description="Branches never logged")
    allowed_authors: List[str] = Field(
        default_factory=list, description="Authors to log; empty logs everyone"
    )

    @field_validator("log_file_path")
    @classmethod
    def validate_log_file_path(cls, v):
        if not v:
            return v
        return str(Path(v).expanduser())

    def to_config(self) -> TrackerConfig:
        return TrackerConfig(
            log_file_path=self.log_file_path,
            log_file=self.log_file,
            excluded_branches=list(self.excluded_branches),
            allowed_authors=list(self.allowed_authors),
        )


class WatchSettings(BaseSettings):
    """Change detection settings."""

    repositories: List[str] = Field(default_factory=list, description="Working trees to watch")
    debounce_ms: int = Field(default=300, description="Quiet period for change bursts")
    poll_interval: float = Field(default=5.0, description="Fallback poll interval in seconds")
    use_filesystem_events: bool = Field(default=True, description="Watch .git for changes")

    @field_validator("debounce_ms")
    @classmethod
    def validate_debounce(cls, v):
        if v < 0:
            raise ValueError("Debounce must not be negative")
        return v

    @field_validator("poll_interval")
    @classmethod
    def validate_poll_interval(cls, v):
        if v <= 0:
            raise ValueError("Poll interval must be positive")
        return v


class GitSettings(BaseSettings):
    """Git command settings."""

    timeout: float = Field(default=10.0, description="Default git command timeout")
    network_timeout: float = Field(default=60.0, description="Timeout for push/pull")
    remote_name: str = Field(default="origin", description="Remote used for names and unpushed checks")
    pull_on_start: bool = Field(default=True, description="Pull the tracking repository at startup")


class StateSettings(BaseSettings):
    """Persisted engine state settings."""

    backend: str = Field(default="file", description="State backend (memory/file/redis)")
    state_file: str = Field(
        default="~/.commit-tracker/state.json", description="State file for the file backend"
    )

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v):
        valid_backends = ["memory", "file", "redis"]
        if v.lower() not in valid_backends:
            raise ValueError(f"State backend must be one of: {valid_backends}")
        return v.lower()


class RedisSettings(BaseSettings):
    """Redis configuration settings."""

    url: str = Field(default="redis://localhost:6379", description="Redis connection URL")
    db: int = Field(default=0, description="Redis database number")
    relay_events: bool = Field(default=False, description="Forward events to a Redis channel")
    channel: str = Field(default="commit_tracker_events", description="Pub/sub channel for events")
    key_prefix: str = Field(default="commit_tracker:", description="Key prefix for persisted state")
    socket_connect_timeout: int = Field(default=5, description="Socket connect timeout")
    socket_timeout: int = Field(default=5, description="Socket timeout")

    @field_validator("url")
    @classmethod
    def validate_redis_url(cls, v):
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("Redis URL must use redis://, rediss:// or unix://")
        return v


class MonitoringSettings(BaseSettings):
    """Logging settings."""

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Logging format string"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()


class ServiceSettings(BaseSettings):
    """HTTP service settings."""

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8001, description="Commit tracker service port")
    request_timeout: float = Field(default=30.0, description="Client request timeout")


class Settings(PydanticBaseSettings):
    """
    Main application settings.

    Values come from the environment or a ``.env`` file, for example
    ``TRACKING__LOG_FILE_PATH=/home/me/commit-logs`` or
    ``TRACKING__EXCLUDED_BRANCHES='["release"]'``.
    """

    app_name: str = Field(default="Commit Tracker", description="Application name")
    version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")

    tracking: TrackingSettings = Field(default_factory=TrackingSettings)
    watch: WatchSettings = Field(default_factory=WatchSettings)
    git: GitSettings = Field(default_factory=GitSettings)
    state: StateSettings = Field(default_factory=StateSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    service: ServiceSettings = Field(default_factory=ServiceSettings)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        valid_environments = ["development", "testing", "production"]
        if v not in valid_environments:
            raise ValueError(f"Environment must be one of: {valid_environments}")
        return v

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "env_nested_delimiter": "__",
        "extra": "ignore"
    }


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Application configuration object

    Example:
        >>> settings = get_settings()
        >>> print(settings.tracking.log_file_path)
    """
    return Settings()


def reload_settings() -> Settings:
    """Drop the cached settings and read them again."""
    get_settings.cache_clear()
    return get_settings()


def validate_configuration(settings: Optional[Settings] = None) -> Dict[str, Any]:
    """
    Validate the settings the engine depends on.

    Returns:
        Dict[str, Any]: Validation results with status, errors and warnings
    """
    settings = settings or get_settings()
    errors = []
    warnings = []

    tracking = settings.tracking
    if not tracking.log_file_path:
        errors.append("Tracking log file path is not configured")
    elif not os.path.isabs(tracking.log_file_path):
        errors.append("Tracking log file path must be absolute")
    elif not Path(tracking.log_file_path).exists():
        warnings.append(f"Tracking directory does not exist yet: {tracking.log_file_path}")
    elif not (Path(tracking.log_file_path) / ".git").exists():
        warnings.append("Tracking directory is not a git repository; pushes will fail")

    for repo in settings.watch.repositories:
        if not (Path(repo).expanduser() / ".git").exists():
            warnings.append(f"Watched path is not a git working tree: {repo}")

    if settings.state.backend == "redis" or settings.redis.relay_events:
        try:
            import redis

            redis_client = redis.from_url(settings.redis.url, socket_connect_timeout=2)
            redis_client.ping()
        except Exception as e:
            warnings.append(f"Redis connection warning: {e}")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "environment": settings.environment,
    }


def export_config(settings: Optional[Settings] = None) -> Dict[str, Any]:
    """
    Export configuration for external tools.

    Returns:
        Dict[str, Any]: Configuration export
    """
    settings = settings or get_settings()
    return {
        "app_name": settings.app_name,
        "version": settings.version,
        "environment": settings.environment,
        "tracking": {
            "log_file_path": settings.tracking.log_file_path,
            "log_file": settings.tracking.log_file,
            "excluded_branches": settings.tracking.excluded_branches,
            "allowed_authors": settings.tracking.allowed_authors,
        },
        "watch": {
            "repositories": settings.watch.repositories,
            "debounce_ms": settings.watch.debounce_ms,
            "poll_interval": settings.watch.poll_interval,
        },
        "git": {
            "timeout": settings.git.timeout,
            "network_timeout": settings.git.network_timeout,
        },
        "state": {"backend": settings.state.backend},
        "monitoring": {"log_level": settings.monitoring.log_level},
        "service": {"host": settings.service.host, "port": settings.service.port},
    }


if __name__ == "__main__":
    """Configuration validation script."""
    import json

    validation = validate_configuration()

    print("Configuration Validation:")
    print(json.dumps(validation, indent=2))

    print("\nConfiguration Export:")
    print(json.dumps(export_config(), indent=2))

    if not validation["valid"]:
        exit(1)

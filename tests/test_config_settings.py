"""
Unit tests for config settings module.

This module tests defaults, validators, environment loading and the
validation/export helpers.
"""

import pytest
from pydantic import ValidationError

from config.settings import (
    GitSettings,
    MonitoringSettings,
    RedisSettings,
    ServiceSettings,
    Settings,
    StateSettings,
    TrackingSettings,
    WatchSettings,
    export_config,
    get_settings,
    reload_settings,
    validate_configuration,
)


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestTrackingSettings:
    """Test cases for TrackingSettings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("LOG_FILE_PATH", raising=False)
        settings = TrackingSettings()

        assert settings.log_file_path == ""
        assert settings.log_file == "commit-tracker.log"
        assert settings.excluded_branches == []
        assert settings.allowed_authors == []

    def test_home_is_expanded(self):
        settings = TrackingSettings(log_file_path="~/commit-logs")

        assert not settings.log_file_path.startswith("~")
        assert settings.log_file_path.endswith("commit-logs")

    def test_to_config(self, tmp_path):
        settings = TrackingSettings(
            log_file_path=str(tmp_path),
            log_file="commits.log",
            excluded_branches=["release"]
        )

        config = settings.to_config()

        assert config.tracking_file_path == str(tmp_path / "commits.log")
        assert config.excluded_branches == ["release"]
        assert config.is_configured


class TestWatchSettings:
    """Test cases for WatchSettings."""

    def test_defaults(self):
        settings = WatchSettings()

        assert settings.debounce_ms == 300
        assert settings.poll_interval == 5.0
        assert settings.use_filesystem_events is True

    def test_negative_debounce(self):
        with pytest.raises(ValidationError):
            WatchSettings(debounce_ms=-1)

    def test_non_positive_poll_interval(self):
        with pytest.raises(ValidationError):
            WatchSettings(poll_interval=0)


class TestOtherSettings:
    """Test cases for the remaining settings groups."""

    def test_git_defaults(self):
        settings = GitSettings()

        assert settings.timeout == 10.0
        assert settings.network_timeout == 60.0
        assert settings.remote_name == "origin"

    def test_state_backend_is_normalised(self):
        assert StateSettings(backend="Redis").backend == "redis"

    def test_invalid_state_backend(self):
        with pytest.raises(ValidationError):
            StateSettings(backend="sqlite")

    def test_invalid_redis_url(self):
        with pytest.raises(ValidationError):
            RedisSettings(url="http://localhost:6379")

    def test_log_level_is_normalised(self):
        assert MonitoringSettings(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            MonitoringSettings(log_level="VERBOSE")

    def test_service_defaults(self):
        settings = ServiceSettings()

        assert settings.host == "127.0.0.1"
        assert settings.port == 8001


class TestSettings:
    """Test cases for the main Settings object."""

    def test_invalid_environment(self):
        with pytest.raises(ValidationError):
            Settings(environment="staging")

    def test_nested_environment_variables(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TRACKING__LOG_FILE_PATH", str(tmp_path))
        monkeypatch.setenv("MONITORING__LOG_LEVEL", "warning")

        settings = Settings()

        assert settings.tracking.log_file_path == str(tmp_path)
        assert settings.monitoring.log_level == "WARNING"

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()

    def test_reload_settings(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("SERVICE__PORT", "9100")

        reloaded = reload_settings()

        assert reloaded is not first
        assert reloaded.service.port == 9100


class TestValidateConfiguration:
    """Test cases for validate_configuration."""

    def test_missing_log_path(self):
        settings = Settings(tracking=TrackingSettings(log_file_path=""))

        result = validate_configuration(settings)

        assert result["valid"] is False
        assert "Tracking log file path is not configured" in result["errors"]

    def test_relative_log_path(self):
        settings = Settings(tracking=TrackingSettings(log_file_path="relative/dir"))

        result = validate_configuration(settings)

        assert result["valid"] is False

    def test_missing_directory_is_a_warning(self, tmp_path):
        settings = Settings(tracking=TrackingSettings(log_file_path=str(tmp_path / "missing")))

        result = validate_configuration(settings)

        assert result["valid"] is True
        assert any("does not exist" in w for w in result["warnings"])

    def test_non_git_directory_is_a_warning(self, tmp_path):
        settings = Settings(
            tracking=TrackingSettings(log_file_path=str(tmp_path)),
            watch=WatchSettings(repositories=[str(tmp_path)])
        )

        result = validate_configuration(settings)

        assert result["valid"] is True
        assert len(result["warnings"]) == 2

    def test_git_directory_is_clean(self, git_repo):
        path, _, _ = git_repo
        settings = Settings(tracking=TrackingSettings(log_file_path=path))

        result = validate_configuration(settings)

        assert result == {
            "valid": True,
            "errors": [],
            "warnings": [],
            "environment": settings.environment,
        }


class TestExportConfig:
    """Test cases for export_config."""

    def test_export(self, tmp_path):
        settings = Settings(
            tracking=TrackingSettings(log_file_path=str(tmp_path), excluded_branches=["release"])
        )

        exported = export_config(settings)

        assert exported["tracking"]["log_file_path"] == str(tmp_path)
        assert exported["tracking"]["excluded_branches"] == ["release"]
        assert exported["watch"]["debounce_ms"] == 300
        assert exported["state"]["backend"] == settings.state.backend
        assert exported["service"]["port"] == settings.service.port

"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from depcache.config import (
    DEFAULT_TARGET_PLATFORM,
    Settings,
    get_settings,
    print_settings_json,
)


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        settings = Settings(_env_file=None)

        assert settings.cache_dir == Path.home() / ".cache" / "depcache" / "bundles"
        assert (
            settings.output_dir
            == Path.home() / ".local" / "share" / "depcache" / "outputs"
        )
        assert "sqlite" in settings.db_url
        assert settings.work_dir is None
        assert settings.cache_url is None
        assert settings.target_platform == DEFAULT_TARGET_PLATFORM
        assert settings.build_profile == "release"
        assert settings.use_recipe_lock is True
        assert settings.log_level == "INFO"

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "DEPCACHE_LOG_LEVEL": "DEBUG",
                "DEPCACHE_TARGET_PLATFORM": "linux-x64",
                "DEPCACHE_USE_RECIPE_LOCK": "false",
                "DEPCACHE_CACHE_URL": "http://cache.example:8080/depcache",
            },
        ):
            settings = Settings()
            assert settings.log_level == "DEBUG"
            assert settings.target_platform == "linux-x64"
            assert settings.use_recipe_lock is False
            assert settings.cache_url == "http://cache.example:8080/depcache"

    def test_settings_cache_dir_from_env(self) -> None:
        """Cache dir should be configurable via env."""
        with patch.dict(os.environ, {"DEPCACHE_CACHE_DIR": "/tmp/test-cache"}):
            settings = Settings()
            assert settings.cache_dir == Path("/tmp/test-cache")

    def test_invalid_log_level_rejected(self) -> None:
        """Unknown log levels should fail validation."""
        with pytest.raises(ValidationError):
            Settings(log_level="VERBOSE")

    def test_build_timeout_lower_bound(self) -> None:
        """Build timeout below one minute should be rejected."""
        with pytest.raises(ValidationError):
            Settings(build_timeout=5)

    def test_cache_timeout_must_be_positive(self) -> None:
        """Cache timeout of zero should be rejected."""
        with pytest.raises(ValidationError):
            Settings(cache_timeout=0)


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        settings = get_settings()
        assert isinstance(settings, Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        settings = Settings()
        parsed = json.loads(print_settings_json(settings))

        assert "cache_dir" in parsed
        assert "output_dir" in parsed
        assert "db_url" in parsed
        assert "target_platform" in parsed
        assert "lock_timeout" in parsed

    def test_print_settings_json_default(self) -> None:
        """print_settings_json should work without explicit settings."""
        parsed = json.loads(print_settings_json())
        assert "log_level" in parsed

"""
Unit tests for schwab_pipeline/core/config.py - Settings and singleton.
"""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError
from pydantic_settings import BaseSettings


class TestSettingsDefaults:
    """Tests for default values."""

    def test_settings_extends_base_settings(self):
        """Settings extends pydantic_settings.BaseSettings."""
        from schwab_pipeline.core.config import Settings

        assert issubclass(Settings, BaseSettings)

    def test_pipeline_defaults(self, settings):
        """Defaults match the brokerage API limits."""
        assert settings.base_url == "https://api.schwabapi.com"
        assert settings.rate_limit_max_requests == 120
        assert settings.rate_limit_window_ms == 60_000
        assert settings.retry_max_attempts == 3
        assert settings.retry_base_delay_ms == 1000
        assert settings.retry_max_delay_ms == 30_000
        assert settings.refresh_threshold_ms == 300_000
        assert settings.refresh_token_ttl_ms == 604_800_000

    def test_no_deployment_environment_field(self):
        """Settings declares no unused deployment environment switch."""
        from schwab_pipeline.core.config import Settings

        assert "environment" not in Settings.model_fields

    def test_client_secret_is_secret(self, settings):
        """The client secret is not exposed by repr."""
        from pydantic import SecretStr

        assert isinstance(settings.client_secret, SecretStr)


class TestSettingsEnvironment:
    """Tests for environment variable loading."""

    def test_env_prefix(self):
        """SCHWAB_PIPELINE_ variables override defaults."""
        from schwab_pipeline.core.config import Settings

        env = {
            "SCHWAB_PIPELINE_RATE_LIMIT_MAX_REQUESTS": "60",
            "SCHWAB_PIPELINE_RETRY_ENABLED": "false",
            "SCHWAB_PIPELINE_CLIENT_SECRET": "s3cret",
        }
        with patch.dict(os.environ, env, clear=False):
            settings = Settings()

        assert settings.rate_limit_max_requests == 60
        assert settings.retry_enabled is False
        assert settings.client_secret.get_secret_value() == "s3cret"
        assert "s3cret" not in repr(settings)

    def test_url_validation(self):
        """Base URL must be http(s); trailing slashes are removed."""
        from schwab_pipeline.core.config import Settings

        assert Settings(base_url="https://example.com/").base_url == "https://example.com"
        with pytest.raises(ValidationError):
            Settings(base_url="ftp://example.com")

    def test_log_level_normalized(self):
        """Log level is upper-cased and validated."""
        from schwab_pipeline.core.config import Settings

        assert Settings(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            Settings(log_level="LOUD")

    def test_retry_attempts_bounded(self):
        """Negative retry budgets are rejected."""
        from schwab_pipeline.core.config import Settings

        with pytest.raises(ValidationError):
            Settings(retry_max_attempts=-1)


class TestSettingsSingleton:
    """Tests for get_settings()."""

    def test_get_settings_cached(self):
        """get_settings() returns the same instance."""
        from schwab_pipeline.core.config import get_settings

        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()

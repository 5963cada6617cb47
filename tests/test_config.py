"""Unit tests for Settings."""

import pytest
from pydantic import ValidationError

from rmq_mock.config import Settings, get_settings


class TestSettings:
    """Tests for Settings loading and validation."""

    def test_defaults(self, settings):
        """Test default values."""
        assert settings.pop_api == "bunny"
        assert settings.temporary_queue_prefix == "amq.gen-"
        assert settings.consumer_tag_prefix == "bunny"
        assert settings.log_level == "INFO"
        assert settings.log_format == "text"
        assert settings.log_file is None

    def test_from_environment(self, monkeypatch):
        """Test values are read from prefixed environment variables."""
        monkeypatch.setenv("RMQ_MOCK_POP_API", "legacy")
        monkeypatch.setenv("RMQ_MOCK_LOG_FORMAT", "json")

        settings = Settings(_env_file=None)

        assert settings.pop_api == "legacy"
        assert settings.log_format == "json"

    def test_invalid_pop_api(self):
        """Test unknown pop API is rejected."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, pop_api="kombu")

    def test_invalid_log_level(self):
        """Test unknown log level is rejected."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_level="VERBOSE")

    def test_empty_prefix(self):
        """Test generated-name prefixes must not be empty."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, temporary_queue_prefix="")

    def test_get_settings_is_cached(self):
        """Test settings are loaded once."""
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
